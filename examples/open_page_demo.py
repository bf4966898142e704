"""Open a page through the driver and print its title and main response."""

import argparse
import logging
import sys

from driverlink import DriverLinkError
from driverlink import run
from driverlink.proxies import Browser
from driverlink.proxies import Page
from driverlink.proxies import Playwright
from driverlink.proxies import Response


def _parse_args() -> argparse.Namespace:
    """Parse CLI arguments.

    :returns: Parsed CLI arguments.
    """
    parser = argparse.ArgumentParser(description="Load one URL in a headless browser via the driver.")
    parser.add_argument("url", help="URL to open.")
    parser.add_argument("--driver", default=None, help="Driver executable; defaults to DRIVERLINK_DRIVER_PATH.")
    parser.add_argument("--browser", default="chromium", choices=("chromium", "firefox", "webkit"))
    parser.add_argument("--timeout", type=float, default=30.0, help="Navigation timeout in seconds.")
    parser.add_argument("--verbose", action="store_true", help="Log protocol traffic.")
    return parser.parse_args()


def main() -> int:
    """Run the demonstration.

    :returns: Process exit code where ``0`` indicates success.
    """
    args: argparse.Namespace = _parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose is True else logging.WARNING)

    try:
        playwright: Playwright = run(executable=args.driver)
    except (DriverLinkError, ValueError) as exc:
        print(f"could not start driver: {exc}", file=sys.stderr)
        return 1

    try:
        browser: Browser = getattr(playwright, args.browser).launch(headless=True)
        page: Page = browser.new_page()
        page.on("load", lambda: print("load event"))
        response: Response | None = page.goto(args.url, timeout=args.timeout)
        if response is not None:
            print(f"{response.status} {response.status_text} {response.url}")
        print(f"title: {page.title()}")
        browser.close()
    except DriverLinkError as exc:
        print(f"automation failed: {exc}", file=sys.stderr)
        return 1
    finally:
        playwright.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
