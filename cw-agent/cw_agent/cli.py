"""
cw-agent command line.

    cw-agent start -c /etc/certwatch/certwatch.yaml
    cw-agent start -c certwatch.yaml --reset-agent --yes
    cw-agent validate -c certwatch.yaml
    cw-agent state show -c certwatch.yaml
"""
import asyncio
import logging
from typing import NoReturn

import click

from . import ui
from .agent_config import DEFAULT_CONFIG_PATH, AgentConfig, ConfigError, format_duration, load_agent_config
from .agent_runtime.service import AgentRuntime
from .logger import bind_agent, setup_logging
from .state.errors import IdentityDriftError, StateCorruptedError, StatePersistenceError, StatePurgeError
from .state.lifecycle import IdentityLifecycle, StartupDecision
from .state.manager import StateManager
from .version import get_info

logger = logging.getLogger("cw-agent.cli")


def _fail(message: str) -> NoReturn:
    click.echo(ui.render_error(message))
    raise click.exceptions.Exit(1)


def _load_config(config_path: str) -> AgentConfig:
    try:
        cfg = load_agent_config(config_path)
        cfg.validate_ready()
    except ConfigError as e:
        click.echo()
        _fail(f"Invalid configuration: {e}")
    return cfg


def _load_state(config_path: str) -> StateManager:
    state_manager = StateManager(config_path)
    try:
        state_manager.load()
    except StateCorruptedError as e:
        # Corrupted state is treated as a first run
        click.echo(ui.render_warning(str(e)))
    return state_manager


@click.group()
@click.option(
    "-c", "--config", "config_path",
    default=DEFAULT_CONFIG_PATH, show_default=True, envvar="CW_CONFIG",
    type=click.Path(dir_okay=False),
    help="Path to the agent configuration file.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str):
    """CertWatch Agent - monitor TLS certificates and report to CertWatch."""
    ctx.obj = {"config_path": config_path}


# === START ===

def _render_name_change(err: IdentityDriftError):
    click.echo()
    click.echo(ui.render_app_header())
    click.echo()
    lines = [
        "",
        f"  Previous: \"{err.previous_name}\" ({ui.truncate_id(err.previous_agent_id)})",
        f"  New:      \"{err.configured_name}\"",
        "",
        "  Certificates from the old agent will NOT be",
        "  automatically transferred.",
        "",
        "  Options:",
        "  1. Continue with new name (migrates matching certs):",
        "     " + ui.render_code("cw-agent start -c <config> --reset-agent"),
        "",
        "  2. Keep existing agent (revert config):",
        f"     Edit config: agent.name = \"{err.previous_name}\"",
    ]
    click.echo(ui.render_warning_box("Agent Name Changed", lines))
    click.echo()
    click.echo(ui.render_info("Exiting. No changes made."))
    click.echo()


def _handle_agent_reset(lifecycle: IdentityLifecycle, decision: StartupDecision, skip_confirm: bool):
    click.echo()
    click.echo(ui.render_app_header())
    click.echo()
    lines = [
        "",
        f"  Previous: \"{decision.previous_name}\" ({ui.truncate_id(decision.previous_agent_id)})",
        f"  New:      \"{decision.configured_name}\"",
        "",
        "  On next sync:",
        "  • Matching certs will migrate to new agent",
        "  • Non-matching certs will be orphaned",
    ]
    click.echo(ui.render_warning_box("Agent Reset", lines))
    click.echo()

    if skip_confirm:
        click.echo(ui.render_info("--yes flag provided, skipping confirmation"))
    elif not click.confirm("Continue?", default=False):
        click.echo()
        click.echo(ui.render_warning("Reset canceled by user"))
        raise click.exceptions.Exit(1)

    try:
        lifecycle.apply_reset(decision.configured_name)
    except StatePersistenceError as e:
        _fail(f"Failed to save state: {e}")

    click.echo()
    click.echo(ui.render_success("Agent state reset"))
    click.echo(ui.render_info("Starting with new agent..."))
    click.echo()


def _render_startup(cfg: AgentConfig, state_manager: StateManager):
    click.echo()
    click.echo(ui.render_app_header())
    click.echo()
    click.echo(ui.render_section("Agent"))
    click.echo()
    click.echo(ui.render_key_value("Name", cfg.agent.name))
    agent_id = state_manager.get_agent_id()
    if agent_id:
        click.echo(ui.render_key_value("Agent ID", ui.truncate_id(agent_id)))
    click.echo(ui.render_key_value("Certificates", str(len(cfg.certificates))))
    click.echo(ui.render_key_value("Sync", format_duration(cfg.agent.sync_interval)))
    click.echo()
    click.echo(ui.render_success("Agent started"))
    click.echo()


@cli.command()
@click.option("--reset-agent", is_flag=True,
              help="Reset agent state and re-register (transfers certs to new agent, orphans removed certs).")
@click.option("-y", "--yes", "skip_confirm", is_flag=True,
              help="Skip confirmation prompts (for CI/automation).")
@click.pass_obj
def start(obj: dict, reset_agent: bool, skip_confirm: bool):
    """Start the CertWatch monitoring agent."""
    config_path = obj["config_path"]
    cfg = _load_config(config_path)
    bind_agent(cfg.agent.name)
    state_manager = _load_state(config_path)
    lifecycle = IdentityLifecycle(state_manager)

    try:
        decision = lifecycle.evaluate(cfg.agent.name, reset_requested=reset_agent)
    except IdentityDriftError as e:
        _render_name_change(e)
        _fail(str(e))

    if decision.reset_required:
        _handle_agent_reset(lifecycle, decision, skip_confirm)

    _render_startup(cfg, state_manager)

    runtime = AgentRuntime(cfg, state_manager)
    try:
        asyncio.run(runtime.run())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"Agent error: {e}", exc_info=True)
        _fail(f"Agent error: {e}")

    click.echo()
    click.echo(ui.render_info("Agent stopped gracefully"))


# === VALIDATE ===

@cli.command()
@click.pass_obj
def validate(obj: dict):
    """Validate the configuration file without starting the agent."""
    click.echo()
    click.echo(ui.render_command_header("Config Validation"))
    click.echo()

    try:
        cfg = load_agent_config(obj["config_path"])
    except ConfigError as e:
        click.echo(ui.render_error("Configuration validation failed"))
        _fail("  " + str(e))
    click.echo(ui.render_success("Configuration loaded"))

    try:
        cfg.validate_ready()
    except ConfigError as e:
        _fail(str(e))

    click.echo(ui.render_success("API settings valid"))
    click.echo(ui.render_success("Agent settings valid"))
    click.echo(ui.render_success(f"{len(cfg.certificates)} certificates configured"))

    click.echo()
    click.echo(ui.render_section("Summary"))
    click.echo()
    click.echo(ui.render_key_value("Agent", cfg.agent.name))
    if cfg.api.endpoint != ui.DEFAULT_API_ENDPOINT:
        click.echo(ui.render_key_value("API Endpoint", cfg.api.endpoint))
    click.echo(ui.render_key_value("Certificates", str(len(cfg.certificates))))
    click.echo(ui.render_key_value("Sync", format_duration(cfg.agent.sync_interval)))
    click.echo(ui.render_key_value("Scan", format_duration(cfg.agent.scan_interval)))
    click.echo()
    click.echo(ui.render_success("Configuration is valid!"))
    click.echo()


# === VERSION ===

@cli.command()
def version():
    """Print version information."""
    info = get_info()
    click.echo()
    click.echo(ui.render_app_header())
    click.echo()
    click.echo(ui.render_key_value("Version", info["version"]))
    click.echo(ui.render_key_value("Commit", info["git_commit"]))
    click.echo(ui.render_key_value("Build Date", info["build_date"]))
    click.echo(ui.render_key_value("Python", info["python_version"]))
    click.echo(ui.render_key_value("Platform", info["platform"]))
    click.echo()


# === STATE ===

@cli.group()
def state():
    """Inspect or remove the stored agent identity."""


@state.command("show")
@click.pass_obj
def state_show(obj: dict):
    """Show the stored agent identity."""
    state_manager = _load_state(obj["config_path"])
    record = state_manager.snapshot()

    click.echo()
    click.echo(ui.render_command_header("Agent State"))
    click.echo()
    if not state_manager.has_state():
        click.echo(ui.render_info(f"No agent state at {state_manager.file_path}"))
        click.echo()
        return

    click.echo(ui.render_key_value("Name", record.agent_name or "-"))
    click.echo(ui.render_key_value("Agent ID", record.agent_id or "(not registered)"))
    if record.previous_agent_id:
        click.echo(ui.render_key_value("Migrating", record.previous_agent_id))
    last_sync = record.last_sync_at.isoformat() if record.last_sync_at else "never"
    click.echo(ui.render_key_value("Last Sync", last_sync))
    if record.last_updated:
        click.echo(ui.render_key_value("Updated", record.last_updated.isoformat()))
    click.echo(ui.render_key_value("File", str(state_manager.file_path)))
    click.echo()


@state.command("reset")
@click.option("-y", "--yes", "skip_confirm", is_flag=True, help="Skip confirmation prompt.")
@click.pass_obj
def state_reset(obj: dict, skip_confirm: bool):
    """Delete the stored agent identity. The next start registers a brand new agent."""
    state_manager = _load_state(obj["config_path"])

    click.echo()
    if state_manager.has_state():
        click.echo(ui.render_warning(
            f"This forgets agent \"{state_manager.get_agent_name()}\" "
            f"({ui.truncate_id(state_manager.get_agent_id()) or 'not registered'}). "
            "Its certificates will not be migrated."
        ))
    if not skip_confirm and not click.confirm("Remove agent state?", default=False):
        click.echo(ui.render_warning("Reset canceled by user"))
        raise click.exceptions.Exit(1)

    try:
        state_manager.reset()
    except StatePurgeError as e:
        _fail(str(e))

    click.echo(ui.render_success(f"Removed {state_manager.file_path}"))
    click.echo()


def main():
    setup_logging()
    cli(prog_name="cw-agent")


if __name__ == "__main__":
    main()
