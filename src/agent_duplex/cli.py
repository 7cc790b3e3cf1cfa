"""
Command-line interface for agent-duplex.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

import yaml
from rich.console import Console
from rich.table import Table

from agent_duplex.config import AgentDuplexConfig
from agent_duplex.logging import setup_logging

console = Console()


def config_paths() -> list[Path]:
    """Where a config file is looked for when none is given."""
    return [
        Path.cwd() / "agent-duplex.yaml",
        Path.home() / ".config" / "agent-duplex" / "config.yaml",
    ]


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Bidirectional streaming runtime for tool-using agents",
        prog="agent-duplex",
    )

    # Global options
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output (debug logging)",
    )
    parser.add_argument(
        "-c",
        "--config",
        help="Path to a YAML config file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the WebSocket server")
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port")
    serve_parser.add_argument("--db", help="SQLite file for session persistence")

    # stdio
    subparsers.add_parser("stdio", help="Serve one session over stdin/stdout (JSON lines)")

    # sessions
    sessions_parser = subparsers.add_parser("sessions", help="List stored sessions")
    sessions_parser.add_argument("--db", help="SQLite file to read")

    # config
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_init_parser = config_subparsers.add_parser("init", help="Initialize a new config file")
    config_init_parser.add_argument(
        "-o",
        "--output",
        default="agent-duplex.yaml",
        help="Output file path",
    )
    config_subparsers.add_parser("path", help="Show config file paths")

    args = parser.parse_args(argv)

    # Setup logging based on verbosity (stderr, so stdio mode keeps stdout clean)
    setup_logging("DEBUG" if args.verbose else "WARNING")

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "stdio":
        asyncio.run(cmd_stdio(args))
    elif args.command == "sessions":
        asyncio.run(cmd_sessions(args))
    elif args.command == "config":
        cmd_config(args)
    else:
        parser.print_help()


def load_config(path: str | None = None) -> tuple[AgentDuplexConfig, Path | None]:
    """Load config from *path*, the search paths, or defaults plus environment."""
    if path:
        return AgentDuplexConfig.from_env(Path(path)), Path(path)
    for candidate in config_paths():
        if candidate.exists():
            return AgentDuplexConfig.from_env(candidate), candidate
    return AgentDuplexConfig.from_env(), None


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the WebSocket server."""
    from agent_duplex.adapters.openai import OpenAIModelClient
    from agent_duplex.server import run_server

    config, _ = load_config(args.config)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.db:
        config.server.db_path = args.db

    url = f"ws://{config.server.host}:{config.server.port}/ws"
    console.print(
        f"[bold]agent-duplex[/bold] serving [cyan]{url}[/cyan]"
        f" with model [green]{config.model.model}[/green]"
    )
    run_server(config, OpenAIModelClient.from_config(config.model))


async def cmd_stdio(args: argparse.Namespace) -> None:
    """Serve a single session over stdin/stdout."""
    from agent_duplex.adapters.openai import OpenAIModelClient
    from agent_duplex.loop import create_loop_factory
    from agent_duplex.rpc import run_stdio

    config, _ = load_config(args.config)
    factory = create_loop_factory(config, OpenAIModelClient.from_config(config.model))
    await run_stdio(factory, config)


async def cmd_sessions(args: argparse.Namespace) -> None:
    """List sessions stored in a SQLite repository."""
    from agent_duplex.repository import SqliteSessionRepository

    config, _ = load_config(args.config)
    db_path = args.db or config.server.db_path
    if not db_path:
        console.print("[yellow]No database configured. Pass --db or set server.db_path.[/yellow]")
        sys.exit(1)
    if not Path(db_path).exists():
        console.print(f"[red]Database not found: {db_path}[/red]")
        sys.exit(1)

    sessions = await SqliteSessionRepository(db_path).list_sessions()
    table = Table(title="Stored Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Messages", justify="right")
    table.add_column("Removed", justify="right")
    table.add_column("Updated")
    for s in sessions:
        table.add_row(
            s["id"],
            str(s["messages"]),
            str(s["removed_message_count"]),
            datetime.fromtimestamp(s["updated_at"]).strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
    console.print(f"\n[dim]Total: {len(sessions)} sessions[/dim]")


def cmd_config(args: argparse.Namespace) -> None:
    """Configuration management commands."""
    if args.config_command == "show":
        _config_show(args.config)
    elif args.config_command == "init":
        _config_init(args.output)
    elif args.config_command == "path":
        _config_path()
    else:
        console.print("[yellow]Usage: agent-duplex config <show|init|path>[/yellow]")


def _config_show(path: str | None) -> None:
    """Show current configuration."""
    config, loaded_from = load_config(path)
    if loaded_from is None:
        console.print("[dim]No config file found. Using defaults.[/dim]")
    else:
        console.print(f"[dim]Loaded from: {loaded_from}[/dim]\n")

    data = config.to_dict()
    if data["model"].get("api_key"):
        data["model"]["api_key"] = "***"
    console.print("[bold]Current Configuration:[/bold]\n")
    console.print(yaml.dump(data, default_flow_style=False, sort_keys=False))


def _config_init(output: str) -> None:
    """Initialize a new config file."""
    output_path = Path(output)

    if output_path.exists():
        console.print(f"[red]File already exists: {output_path}[/red]")
        sys.exit(1)

    data = AgentDuplexConfig().to_dict()
    data["model"].pop("api_key", None)
    data["model"].pop("base_url", None)

    with open(output_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    console.print(f"[green]Created config file: {output_path}[/green]")


def _config_path() -> None:
    """Show config file search paths."""
    console.print("[bold]Config file search paths:[/bold]\n")
    for path in config_paths():
        exists = "[green]✓[/green]" if path.exists() else "[dim]·[/dim]"
        console.print(f"  {exists} {path}")


if __name__ == "__main__":
    main()
