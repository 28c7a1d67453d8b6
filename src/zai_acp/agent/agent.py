"""App-level entrypoints: the ACP server on stdio and interactive API key setup."""

from __future__ import annotations

import argparse
import asyncio
import logging

from prompt_toolkit import PromptSession  # type: ignore
from rich.console import Console

from zai_acp.agent.acp.auth_flow import API_KEY_URL
from zai_acp.agent.acp_agent import ZaiAcpAgent
from zai_acp.api_key import validate_api_key
from zai_acp.log_utils import build_log_config, configure_logging, log_event
from zai_acp.settings import CredentialStore, apply_environment_settings, load_managed_settings, load_runtime_env

__all__ = ["ZaiAcpAgent", "run_acp_agent", "run_setup", "main", "main_entry"]

logger = logging.getLogger(__name__)


def prepare_environment() -> None:
    """Load `.env` files and seed the environment from managed settings."""
    load_runtime_env()
    settings = load_managed_settings()
    if settings is not None:
        apply_environment_settings(settings)


async def run_acp_agent() -> None:
    """Run the ACP server."""
    from acp.core import run_agent  # Imported lazily to avoid hard dependency at import time

    configure_logging(build_log_config(log_file_name="acp_server.log"))
    prepare_environment()
    log_event(logger, "acp.server.start", transport="stdio")
    await run_agent(ZaiAcpAgent())


async def run_setup(console: Console | None = None, store: CredentialStore | None = None) -> int:
    """Prompt for a Z.AI API key, validate it and store it in managed settings."""
    console = console or Console(stderr=True)
    store = store or CredentialStore()
    configure_logging(build_log_config(log_file_name="setup.log"))
    prepare_environment()

    console.print("[bold]Z.AI API key setup[/bold]")
    console.print(f"Get a key at {API_KEY_URL}")
    session: PromptSession[str] = PromptSession()
    try:
        api_key = (await session.prompt_async("API Key: ", is_password=True)).strip()
    except (EOFError, KeyboardInterrupt):
        console.print("[yellow]Setup cancelled.[/yellow]")
        return 1
    if not api_key:
        console.print("[red]No API key entered.[/red]")
        return 1

    with console.status("Validating API key..."):
        result = await validate_api_key(api_key)
    if not result.is_valid:
        console.print(f"[red]{result.error or 'Invalid API key'}[/red]")
        return 1

    path = store.save(api_key)
    console.print(f"[green]API key saved to {path}[/green]")
    return 0


async def main(argv: list[str] | None = None) -> int:
    """Default entrypoint launches the ACP server on stdio."""
    parser = argparse.ArgumentParser(prog="z-ai-acp", description="ACP agent for Z.AI GLM models")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--acp", action="store_true", help="Run the ACP server on stdio (default)")
    group.add_argument("--setup", action="store_true", help="Configure the Z.AI API key interactively")
    args = parser.parse_args(argv)

    if args.setup:
        return await run_setup()
    await run_acp_agent()
    return 0


def main_entry() -> int:
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    main_entry()
