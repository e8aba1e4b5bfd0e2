from __future__ import annotations

import asyncio
import signal

from answerbot.app import AnswerBotApp


async def _main() -> None:
    app = AnswerBotApp()
    stopped = asyncio.Event()

    async def _shutdown(sig_name: str) -> None:
        app.logger.info("Shutdown signal received.", signal=sig_name)
        try:
            await app.stop()
        finally:
            stopped.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(_shutdown(s.name)))

    # Without a Discord token the gateway returns at once and the process idles until a signal.
    gateway = asyncio.create_task(app.start())
    waiter = asyncio.create_task(stopped.wait())
    done, _ = await asyncio.wait({gateway, waiter}, return_when=asyncio.FIRST_COMPLETED)
    if gateway in done and gateway.exception() is not None:
        app.logger.error("Discord gateway stopped.", error=str(gateway.exception()))
        await app.stop()
        return
    await waiter


def run() -> None:
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
