import argparse
import json
import logging
import os
import sys
from pathlib import Path

from agent_toolbelt.config import DEFAULT_CONFIG_DIR, load_tool_configs
from agent_toolbelt.tools import build_default_tool_registry
from agent_toolbelt.tools.base import ToolContext


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Process, shell and MCP tools for coding agents")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding the .env config (default: ~/.config/agent-toolbelt)",
    )
    parser.add_argument("--workspace", default="", help="Workspace used when a tool configures none")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Serve the tools over HTTP")
    serve.add_argument("--host", default="127.0.0.1", help="Bind host")
    serve.add_argument("--port", type=int, default=8766, help="Bind port")

    sub.add_parser("list", help="Print the tool definitions as JSON")

    run = sub.add_parser("exec", help="Execute one tool call and print its output")
    run.add_argument("tool", help="Tool name")
    run.add_argument("arguments", nargs="?", default="{}", help="JSON argument object")
    return parser


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    _configure_logging(args.log_level)

    config_dir = Path(args.config_dir).expanduser().resolve()
    workspace = Path(args.workspace).expanduser().resolve() if args.workspace else None
    context = ToolContext(workspace_root=workspace)
    registry = build_default_tool_registry(load_tool_configs(config_dir))

    if args.command == "serve":
        from agent_toolbelt.api.app import create_app
        import uvicorn

        app = create_app(registry, context=context)
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
        return 0

    try:
        if args.command == "list":
            print(json.dumps(registry.tool_schemas(), indent=2, ensure_ascii=False))
            return 0
        result = registry.execute(args.tool, args.arguments, context)
        stream = sys.stdout if result.ok else sys.stderr
        print(result.output, file=stream)
        return 0 if result.ok else 1
    finally:
        registry.close()


if __name__ == "__main__":
    sys.exit(main())
