"""CLI entry point for botrelay."""

from __future__ import annotations

import argparse
import asyncio
import sys

from botrelay.core.config import HOST, LOG_LEVEL, PORT


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="botrelay",
        description="Chat relay between API-key clients and an upstream LLM provider",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", default=HOST)
    serve_parser.add_argument("--port", type=int, default=PORT)

    seed_parser = subparsers.add_parser("seed", help="Create a bot and print a new API key")
    seed_parser.add_argument("--owner-email", required=True)
    seed_parser.add_argument("--bot-name", required=True)
    seed_parser.add_argument("--upstream-key", required=True, help="Provider API key for the bot")
    seed_parser.add_argument("--upstream-url", required=True, help="Provider base URL, e.g. https://api.dify.ai/v1")
    seed_parser.add_argument("--welcome", default=None, help="Welcome message for new conversations")
    seed_parser.add_argument("--fallback", default=None, help="Reply used when the provider fails")

    args = parser.parse_args()

    if args.command is None:
        args.command = "serve"
        args.host = HOST
        args.port = PORT

    if args.command == "serve":
        _serve(args.host, args.port)
    elif args.command == "seed":
        asyncio.run(_seed(args))


def _serve(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("botrelay.main:app", host=host, port=port, log_level=LOG_LEVEL.lower())


async def _seed(args: argparse.Namespace) -> None:
    from botrelay.core.database import SessionLocal, engine, init_db
    from botrelay.core.logging import setup_logging
    from botrelay.seed import seed

    setup_logging(LOG_LEVEL)
    await init_db(engine)
    try:
        async with SessionLocal() as db:
            result = await seed(
                db,
                owner_email=args.owner_email,
                bot_name=args.bot_name,
                upstream_api_key=args.upstream_key,
                upstream_base_url=args.upstream_url,
                welcome_message=args.welcome,
                fallback_message=args.fallback,
            )
    except Exception as e:
        print(f"Seeding failed: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        await engine.dispose()

    print(f"Bot created: {result.bot_id}")
    print(f"API key (shown once): {result.api_key}")


if __name__ == "__main__":
    main()
