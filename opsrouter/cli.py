import argparse
import asyncio
import json
import logging
import sys
import uuid
from typing import Any, Dict, List

from opsrouter import __version__
from opsrouter.bootstrap import build_registry, process_command, setup_logging
from opsrouter.command_utils import classify_command_risk
from opsrouter.config_loader import load_config
from opsrouter.registry import ServiceRegistry
from opsrouter.schemas import Decision

_CLI_LOGGER = None

RISK_STYLES = {"none": "green", "low": "green", "medium": "yellow", "high": "red", "critical": "bold red"}


def _get_cli_logger(cfg) -> logging.Logger:
    global _CLI_LOGGER
    if _CLI_LOGGER:
        return _CLI_LOGGER
    setup_logging(cfg)
    _CLI_LOGGER = logging.getLogger("opsrouter.cli")
    return _CLI_LOGGER


def _render_decision(console, decision: Decision) -> None:
    from rich.panel import Panel
    from rich.text import Text

    if decision.awaiting_confirmation:
        console.print(Panel(Text(decision.confirmation_message or decision.content), title="confirmation required", border_style="yellow"))
        return
    style = "green" if decision.success else "red"
    meta = decision.metadata
    body = decision.content
    if decision.should_process and meta.get("command"):
        note = " (bypassed analysis)" if meta.get("bypassedAI") else ""
        body = (body + "\n\n" if body else "") + f"$ {meta['command']}{note}"
    elif decision.should_process and meta.get("commands"):
        body = (body + "\n\n" if body else "") + "\n".join(f"$ {c}" for c in meta["commands"])
    if not body:
        body = "(no content)"
    title = decision.type
    if meta.get("routedBy"):
        title += f" via {meta['routedBy']}"
    console.print(Panel(Text(body), title=title, border_style=style))


async def _chat(cfg, session_id: str) -> int:
    from rich.console import Console

    console = Console()
    registry = build_registry(cfg)
    console.print(f"[bold]opsrouter[/bold] {__version__}  session {session_id}  (exit/quit to leave)")
    try:
        while True:
            try:
                text = console.input("[cyan]> [/cyan]")
            except (EOFError, KeyboardInterrupt):
                console.print()
                break
            if text.strip().lower() in ("exit", "quit"):
                break
            if not text.strip():
                continue
            decision = await process_command(registry, session_id, text)
            _render_decision(console, decision)
    finally:
        await registry.shutdown()
    return 0


def cmd_chat(cfg, args) -> int:
    return asyncio.run(_chat(cfg, args.session or str(uuid.uuid4())))


async def _dispatch_once(cfg, text: str, session_id: str, path: str) -> Decision:
    registry = build_registry(cfg)
    try:
        return await process_command(registry, session_id, text, path=path or None)
    finally:
        await registry.shutdown()


def cmd_dispatch(cfg, args) -> int:
    text = " ".join(args.text).strip()
    if not text:
        print("No input provided.", file=sys.stderr)
        return 1
    decision = asyncio.run(_dispatch_once(cfg, text, args.session, args.path))
    if args.json:
        print(json.dumps(decision.to_wire(), ensure_ascii=False))
    else:
        from rich.console import Console
        _render_decision(Console(), decision)
    return 0 if decision.success else 2


def _provider_rows(registry: ServiceRegistry) -> List[Dict[str, Any]]:
    return [p.describe() for p in registry.get_providers()]


def cmd_providers(cfg, args) -> int:
    from rich.console import Console
    from rich.table import Table

    rows = _provider_rows(build_registry(cfg))
    if args.json:
        print(json.dumps(rows, ensure_ascii=False))
        return 0
    table = Table(title="Providers")
    table.add_column("id", style="cyan")
    table.add_column("name", style="magenta")
    table.add_column("priority", justify="right")
    table.add_column("system")
    table.add_column("description", style="white")
    for row in rows:
        table.add_row(row["id"], row["name"], str(row["priority"]), "yes" if row["isSystemService"] else "no", row["description"])
    Console().print(table)
    return 0


def cmd_classify(cfg, args) -> int:
    from rich.console import Console

    cmd = " ".join(args.text).strip()
    risk = classify_command_risk(cmd)
    if args.json:
        print(json.dumps(risk, ensure_ascii=False))
        return 0
    style = RISK_STYLES.get(risk["level"], "white")
    Console().print(f"risk: [{style}]{risk['level']}[/{style}]")
    for reason in risk["reasons"]:
        print(f"  - {reason}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="opsrouter: route terminal input to capability providers")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    sub = parser.add_subparsers(dest="command", required=False)

    p_chat = sub.add_parser("chat", help="Start an interactive session")
    p_chat.add_argument("--session", default="", help="Session id (default: random)")
    p_chat.set_defaults(func=cmd_chat)

    p_dispatch = sub.add_parser("dispatch", help="Route a single input and print the decision")
    p_dispatch.add_argument("text", nargs="+", help="Input text")
    p_dispatch.add_argument("--session", default="cli", help="Session id")
    p_dispatch.add_argument("--path", default="", help="Working directory to report")
    p_dispatch.add_argument("--json", action="store_true", help="Emit JSON output")
    p_dispatch.set_defaults(func=cmd_dispatch)

    p_providers = sub.add_parser("providers", help="List configured providers")
    p_providers.add_argument("--json", action="store_true", help="Emit JSON output")
    p_providers.set_defaults(func=cmd_providers)

    p_classify = sub.add_parser("classify", help="Local risk estimate for a command line")
    p_classify.add_argument("text", nargs="+", help="Command line")
    p_classify.add_argument("--json", action="store_true", help="Emit JSON output")
    p_classify.set_defaults(func=cmd_classify)

    return parser


def main(argv: List[str] = None) -> int:
    cfg = load_config()
    parser = build_parser()
    if argv is None:
        argv = sys.argv[1:]
    if "--version" in argv:
        print(__version__)
        return 0
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        return cmd_chat(cfg, argparse.Namespace(session=""))
    try:
        _get_cli_logger(cfg).info("cli_command %s", args.command)
        return args.func(cfg, args)
    except Exception as e:
        _get_cli_logger(cfg).exception("cli_exception %s", args.command)
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
