import asyncio
import json
import logging
import sys
from datetime import datetime

import typer

from wabridge.config import Settings, load_settings
from wabridge.runtime import SupervisedRuntime, build_coordinator, build_reclaimer
from wabridge.supervisor.browser_sweep import HostProcess, run_browser_sweep
from wabridge.supervisor.process_probe import is_process_running
from wabridge.supervisor.process_registry import ProcessRegistry, now_ms

app = typer.Typer(help="WhatsApp Web bridge browser supervisor.")

logger = logging.getLogger("wabridge.cli")


def configure_logging(level: str) -> None:
    """Send logs to stderr so stdout stays free for the protocol channel."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def _settings() -> Settings:
    settings = load_settings()
    configure_logging(settings.log_level)
    return settings


async def _prompt_kill(candidates: list[HostProcess]) -> bool:
    return await asyncio.to_thread(
        typer.confirm,
        f"Do you want to kill these {len(candidates)} processes?",
        default=False,
    )


@app.command()
def serve():
    """Start the WhatsApp session and supervise it until SIGINT/SIGTERM."""
    settings = _settings()
    logger.info("Starting WhatsApp bridge...")
    coordinator = build_coordinator(settings)
    exit_code = asyncio.run(SupervisedRuntime(coordinator).run())
    raise typer.Exit(code=exit_code)


@app.command("cleanup-browsers")
def cleanup_browsers(
    yes: bool = typer.Option(False, "--yes", "-y", help="Kill candidates without asking"),
):
    """Reclaim tracked orphans and kill untracked WhatsApp browser processes."""
    settings = _settings()
    interactive = sys.stdin.isatty() and not yes
    try:
        result = asyncio.run(
            run_browser_sweep(
                build_reclaimer(settings),
                process_name=settings.browser_process_name,
                signatures=settings.sweep_signatures,
                confirm=_prompt_kill if interactive else None,
            )
        )
    except Exception as exc:
        logger.error("Error during browser cleanup: %s", exc)
        raise typer.Exit(code=1)
    typer.echo(
        f"Tracked orphans removed: {result.reclaim.removed}; "
        f"candidates: {len(result.candidates)}; killed: {len(result.killed)}"
        + (" (cancelled)" if result.declined else "")
    )


async def _status_rows(registry: ProcessRegistry) -> list[dict]:
    now = now_ms()
    rows = []
    for entry in sorted(await registry.read(), key=lambda item: item.pid):
        rows.append(
            {
                "pid": entry.pid,
                "owner": entry.server_instance_id,
                "registered_at": datetime.fromtimestamp(entry.start_time / 1000).isoformat(),
                "age_seconds": round(entry.age_ms(now) / 1000, 1),
                "running": await is_process_running(entry.pid),
            }
        )
    return rows


@app.command()
def status(
    json_output: bool = typer.Option(False, "--json", help="Print tracked processes as JSON"),
):
    """List browser processes tracked in the registry file."""
    settings = _settings()
    rows = asyncio.run(_status_rows(ProcessRegistry(settings.pid_file)))
    if json_output:
        typer.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        typer.echo("No tracked browser processes.")
        return
    typer.echo(f"Tracked browser processes ({settings.pid_file}):")
    for row in rows:
        state = "running" if row["running"] else "gone"
        typer.echo(
            f" - PID {row['pid']} [{state}] owner={row['owner']} age={row['age_seconds']}s"
        )


if __name__ == "__main__":
    app()
