"""
Entry point: `python -m cloudctl` or the `cloudctl` console script.
"""
import argparse
import curses
import logging
from typing import List, Optional

from cloudctl import config
from cloudctl.app import App
from cloudctl.config import load_settings
from cloudctl.credentials import CredentialGateway
from cloudctl.logs import configure_logging
from cloudctl.resources import ResourceGateway
from cloudctl.ui import run_dashboard
from cloudctl.watcher import start_profile_watcher

logger = logging.getLogger("cloudctl")


def _beep() -> None:
    curses.beep()


def main(argv: Optional[List[str]] = None) -> int:
    """Main loop."""
    parser = argparse.ArgumentParser(
        prog="cloudctl", description="Terminal dashboard for EC2 and Lambda across AWS profiles")
    parser.add_argument("--profile", help="profile to activate at startup")
    parser.add_argument("--region", default=config.AWS_REGION, help="AWS region override")
    args = parser.parse_args(argv)

    log_buffer = configure_logging(config.LOG_LEVEL, config.LOG_FILE)
    settings = load_settings(config.SETTINGS_FILE)

    credentials = CredentialGateway()
    resources = ResourceGateway(region=args.region)
    app = App(credentials, resources, settings=settings,
              settings_path=config.SETTINGS_FILE, sound=_beep)

    observer = start_profile_watcher(
        [credentials.config_file, credentials.credentials_file], app.scheduler.events
    )
    try:
        app.start(args.profile)
        run_dashboard(app, log_buffer, config.TICK_MS)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        app.shutdown()
        if observer is not None:
            observer.stop()
            observer.join()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
