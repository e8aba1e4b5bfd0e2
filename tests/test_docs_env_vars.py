import re
from pathlib import Path

from answerbot.config import AppEnv, build_orchestrator_options, parse_admin_user_ids


def test_env_vars_in_docs():
    """
    Asserts that every environment variable defined in AppEnv
    is present in both README.md and .env.example.
    """
    env_vars = list(AppEnv.model_fields.keys())

    root_dir = Path(__file__).resolve().parents[1]
    readme_content = (root_dir / "README.md").read_text(encoding="utf-8")
    env_example_content = (root_dir / ".env.example").read_text(encoding="utf-8")

    missing_in_readme = [v for v in env_vars if not re.search(rf"\b{v}\b", readme_content)]
    missing_in_env_example = [
        v for v in env_vars if not re.search(rf"\b{v}\b", env_example_content)
    ]

    assert not missing_in_readme, f"Missing in README.md: {missing_in_readme}"
    assert not missing_in_env_example, (
        f"Missing in .env.example: {missing_in_env_example}"
    )


def test_orchestrator_options_follow_env():
    env = AppEnv.model_validate(
        {
            "DISCORD_SEGMENT_LIMIT": 1500,
            "THINKING_MESSAGE_ENABLED": False,
            "THREAD_CONTEXT_MESSAGES": 4,
            "OPENAI_TIMEOUT_MS": 12000,
            "FEEDBACK_CHANNEL_ID": "900",
        }
    )
    options = build_orchestrator_options(env)
    assert options.segment_limit == 1500
    assert options.thinking_message_enabled is False
    assert options.thread_context_messages == 4
    assert options.generation_timeout_s == 12.0
    assert options.feedback_channel_id == "900"


def test_parse_admin_user_ids():
    assert parse_admin_user_ids(" 1, 2 ,,3 ") == {"1", "2", "3"}
    assert parse_admin_user_ids("") == set()
