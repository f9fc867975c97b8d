# main.py
import asyncio
import logging
import argparse
import sys
from peercall.application import PeerCallApp

def setup_logger(debug: bool):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    app_logger = logging.getLogger("peercall")
    app_logger.setLevel(logging.DEBUG if debug else logging.INFO)

    return app_logger


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--debug", action="store_true", help="Enable debug logging for peercall only")
    parser.add_argument("--loopback", action="store_true", help="Call an in-process echo peer instead of the signaling server")
    parser.add_argument("--target", help="Caller ID to call right away")
    args = parser.parse_args()

    LOGGER = setup_logger(args.debug)

    app = PeerCallApp(loopback=args.loopback)

    LOGGER.info("Starting Application...")
    await app.run(target=args.target)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nApplication terminated by user.")
