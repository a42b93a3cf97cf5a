"""Run the chat gateway.

Usage:
    chat-gateway --config endpoints.yaml
    chat-gateway --address 0.0.0.0 --port 8900 --config endpoints.yaml
"""

import argparse
import os

import uvicorn

from chat_gateway.settings import get_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chat-gateway",
        description="OpenAI-compatible chat completions in front of SageMaker and Bedrock models",
    )
    parser.add_argument("-a", "--address", default=None, help="HTTP server address (default 127.0.0.1)")
    parser.add_argument("-p", "--port", type=int, default=None, help="HTTP server port (default 8900)")
    parser.add_argument("-c", "--config", default=None, help="Path to the model endpoints config file")
    parser.add_argument("--log-level", default=None, help="Log level (default INFO)")
    return parser


def apply_overrides(args: argparse.Namespace) -> None:
    """Command line options take precedence over the environment and .env."""
    overrides = {
        "GATEWAY_HOST": args.address,
        "GATEWAY_PORT": args.port,
        "ENDPOINTS_CONFIG": args.config,
        "LOG_LEVEL": args.log_level,
    }
    for name, value in overrides.items():
        if value is not None:
            os.environ[name] = str(value)

    get_settings.cache_clear()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    apply_overrides(args)

    settings = get_settings()
    uvicorn.run(
        "chat_gateway.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
