#!/usr/bin/env python3
"""
Studio - prompt-to-media web app.
Sign in with an OAuth provider, then generate images, video and audio from a text prompt.
"""

import argparse
import logging
import os
import sys

# Configure logging
logging.basicConfig(
    level=getattr(logging, (os.getenv("LOG_LEVEL") or "info").strip().upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

#
# NOTE: Keep studio imports lazy (inside main) so `--migrate` does not import the web stack.
#


def _default_port() -> int:
    try:
        return int((os.getenv("PORT") or "").strip() or "3000")
    except ValueError:
        return 3000


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run the Studio web server or manage its database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve on $PORT (default 3000)
  python main.py --serve

  # Apply pending user-store migrations
  python main.py --migrate
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP server")
    parser.add_argument("--migrate", action="store_true", help="Apply pending Postgres migrations and exit")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=_default_port(), help="Server listen port (default: $PORT or 3000)")

    args = parser.parse_args()

    if args.migrate:
        from studio.users.migrate import main as migrate_main

        return migrate_main()

    if args.serve:
        from studio.api.app import run

        run(host=args.host, port=args.port)
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
