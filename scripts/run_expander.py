import argparse
import asyncio
import logging

from feed_expander.browser import BrowserSession, PageLifecycle
from feed_expander.config import Settings, settings


async def run(url: str, run_settings: Settings) -> None:
    async with BrowserSession(headless=run_settings.headless) as browser:
        await browser.goto(url)
        lifecycle = PageLifecycle(browser.page, run_settings)
        await lifecycle.attach()
        await lifecycle.wait_closed()


def main():
    parser = argparse.ArgumentParser(description="Expand truncated posts as they appear in a live feed")
    parser.add_argument("--url", default=settings.start_url, help="Page to open")
    parser.add_argument("--mode", choices=["gated", "simple"], default=settings.mode)
    parser.add_argument("--headless", action="store_true", default=settings.headless)
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    run_settings = settings.model_copy(update={"mode": args.mode, "headless": args.headless})
    asyncio.run(run(args.url, run_settings))


if __name__ == "__main__":
    main()
