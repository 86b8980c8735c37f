"""命令行入口。

Examples:
  # 使用 config.yaml / .env 中的配置启动
  python -m agent_gateway

  # 覆盖监听地址与 Provider
  python -m agent_gateway --host 0.0.0.0 --port 9000 --provider kimi
"""

import argparse
import asyncio
import os
import signal
import sys

from agent_gateway.config import load_settings
from agent_gateway.context import ContextBudgeter, Tokenizer
from agent_gateway.infrastructure.logging.logger import setup_logger
from agent_gateway.providers import create_provider
from agent_gateway.tools import vault_tools
from agent_gateway.transport import Gateway


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent_gateway",
        description="Agent Gateway - streaming LLM gateway over WebSocket",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--host", help="Listen address (default from settings: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Listen port (default from settings: 8787)")
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Path to config.yaml (same as AGENT_CONFIG_FILE)",
    )
    parser.add_argument("--provider", help="Model provider override, e.g. deepseek or kimi")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )
    return parser


async def _serve(gateway: Gateway) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows 事件循环不支持，退回 KeyboardInterrupt
            pass
    await gateway.serve_forever(stop)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.config:
        os.environ["AGENT_CONFIG_FILE"] = args.config

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.provider:
        overrides["default_provider"] = args.provider
    if args.verbose:
        overrides["log_level"] = "DEBUG"

    settings = load_settings(**overrides)
    setup_logger(settings)

    try:
        provider = create_provider(settings)
    except KeyError as exc:
        print(f"Error: {exc.args[0]}", file=sys.stderr)
        return 2

    tools = vault_tools(settings.vault_root) if settings.enable_tools else None
    gateway = Gateway(settings, provider, ContextBudgeter(Tokenizer()), tools=tools)
    try:
        asyncio.run(_serve(gateway))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
