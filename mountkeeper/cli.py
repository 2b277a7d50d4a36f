import shlex
from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

from mountkeeper import cloudwatch
from mountkeeper.config import (
    default_output_base,
    find_config,
    init_config,
    load_config,
    save_global_config,
)
from mountkeeper.errors import ExecutableNotFound
from mountkeeper.log import LOGS_FILE, read_logs
from mountkeeper.resolver import default_search_dirs, resolve_executable
from mountkeeper.server import BuildServer, command_action

INFO_KEYS = ("output_base", "sandbox_base", "sandboxfs_path")


def _load_config_or_exit(console):
    try:
        return load_config()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)


def _output_base(config, override=None):
    return override or config.get("output_base") or str(default_output_base())


@click.group(invoke_without_command=True)
@click.version_option(version="0.1.0")
@click.pass_context
def main(ctx):
    """mountkeeper: sandboxfs process supervisor for build servers."""
    if ctx.invoked_subcommand is None:
        shell()


@main.command()
@click.option("--sandboxfs-path", default=None, help="Explicit sandboxfs binary to use.")
@click.option("--global", "global_", is_flag=True,
              help="Enable sandboxfs for every workspace in ~/.mountkeeper/config.json.")
def init(sandboxfs_path, global_):
    """Create .mountkeeperconfig in the current directory with sandboxfs enabled."""
    if global_:
        updates = {"use_sandboxfs": True}
        if sandboxfs_path:
            updates["sandboxfs_path"] = sandboxfs_path
        click.echo(f"Updated {save_global_config(updates)}")
        return
    if find_config():
        click.echo(".mountkeeperconfig already exists.")
        return
    config_path = init_config(sandboxfs_path=sandboxfs_path)
    click.echo(f"Created {config_path}")


@main.command(context_settings={"allow_interspersed_args": False})
@click.option("--use-sandboxfs/--no-use-sandboxfs", default=None,
              help="Run build actions against a sandboxfs mount.")
@click.option("--sandboxfs-path", default=None,
              help="Path to the sandboxfs binary. Skips the PATH lookup.")
@click.option("--sandbox-debug/--nosandbox-debug", default=None,
              help="Leave sandboxfs mounted after the build for inspection.")
@click.option("--output-base", default=None, help="Server output directory.")
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def build(use_sandboxfs, sandboxfs_path, sandbox_debug, output_base, command):
    """Run COMMAND as a one-build server, e.g. mountkeeper build --use-sandboxfs -- make.

    The sandboxfs mount path is passed to COMMAND in $MOUNTKEEPER_SANDBOXFS_MOUNT.
    The server shuts down when the build ends, so --sandbox-debug only keeps
    the mount alive inside `mountkeeper shell`.
    """
    console = Console()
    config = _load_config_or_exit(console)
    server = BuildServer(output_base=_output_base(config, output_base), config=config,
                         console=console)
    try:
        result = _run_build(server, command, use_sandboxfs, sandboxfs_path, sandbox_debug)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    finally:
        server.shutdown()
    if not result.success:
        raise SystemExit(result.exit_code or 1)


def _run_build(server, command, use_sandboxfs, sandboxfs_path, sandbox_debug):
    actions = [command_action(command)] if command else []
    result = server.build(
        actions,
        use_sandboxfs=use_sandboxfs,
        sandboxfs_path=sandboxfs_path,
        sandbox_debug=sandbox_debug,
    )
    console = server.console
    if result.success:
        console.print(f"[bold green]Build succeeded[/bold green]  [dim]{result.elapsed:.1f}s[/dim]")
    else:
        console.print(f"[bold red]Build failed[/bold red]  [dim](exit {result.exit_code})[/dim]")
    if result.pid is not None:
        console.print(f"  [dim]sandboxfs pid {result.pid} at {result.mount_path}[/dim]")
    return result


@main.command()
@click.argument("key", required=False, type=click.Choice(INFO_KEYS))
@click.option("--output-base", default=None, help="Server output directory.")
def info(key, output_base):
    """Print server locations: output_base, sandbox_base, sandboxfs_path."""
    console = Console()
    config = _load_config_or_exit(console)
    base = _output_base(config, output_base)
    try:
        sandboxfs = str(resolve_executable(
            config.get("sandboxfs_path"), default_search_dirs(),
            config.get("sandboxfs_name") or "sandboxfs",
        ))
    except ExecutableNotFound as e:
        sandboxfs = f"<{e}>"
    values = {
        "output_base": str(base),
        "sandbox_base": f"{base}/sandbox",
        "sandboxfs_path": sandboxfs,
    }
    if key:
        click.echo(values[key])
        return
    for k in INFO_KEYS:
        click.echo(f"{k}: {values[k]}")


@main.command()
@click.option("-n", "--limit", default=20, help="Number of log entries to show.")
def logs(limit):
    """Show the sandbox lifecycle audit log."""
    console = Console()

    if not LOGS_FILE.exists():
        console.print("[dim]No logs yet. Run a build first.[/dim]")
        return

    entries = read_logs(limit)
    if not entries:
        console.print("[dim]No logs found.[/dim]")
        return

    table = Table(title="Sandbox Log")
    table.add_column("Time", style="dim")
    table.add_column("Server", style="cyan")
    table.add_column("Event", style="bold")
    table.add_column("PID")
    table.add_column("Detail", max_width=60)

    for entry in entries:
        ts = entry.get("timestamp", "")
        if ts:
            try:
                ts = datetime.fromisoformat(ts).strftime("%m-%d %H:%M:%S")
            except ValueError:
                pass
        event = entry.get("event", "")
        detail = entry.get("mount_path") or entry.get("error") or entry.get("result") or ""
        if event == "build":
            style = "green" if entry.get("result") == "success" else "red"
            detail = f"[{style}]{detail}[/{style}]"
        pid = entry.get("pid")
        table.add_row(ts, entry.get("trace_id", ""), event,
                      "" if pid is None else str(pid), str(detail))

    console.print(table)


@main.command("shell")
@click.option("--output-base", default=None, help="Server output directory.")
def shell_cmd(output_base):
    """Interactive build server. The sandbox survives between builds in debug mode."""
    shell(output_base)


def shell(output_base=None):
    """Interactive build server session."""
    console = Console()
    config = _load_config_or_exit(console)
    server = BuildServer(output_base=_output_base(config, output_base), config=config,
                         console=console)

    console.print("[bold]mountkeeper shell[/bold]")
    console.print(f"[dim]Output base: {server.output_base}[/dim]")
    console.print("[dim]Commands: build OPTIONS -- COMMAND, status, exit[/dim]\n")

    try:
        while True:
            prompt = "mountkeeper[mounted]> " if server.sandbox else "mountkeeper> "
            try:
                user_input = input(prompt).strip()
            except (KeyboardInterrupt, EOFError):
                console.print("\n[dim]Shutting down.[/dim]")
                break

            if not user_input:
                continue

            if user_input in ("exit", "quit", "shutdown"):
                break

            if user_input == "status":
                _print_status(server)
                continue

            try:
                args = shlex.split(user_input)
            except ValueError as e:
                console.print(f"[red]{e}[/red]")
                continue

            if args[0] != "build":
                console.print(f"[red]Unknown command: {args[0]}[/red]")
                continue

            try:
                ctx = build.make_context("build", args[1:])
            except click.exceptions.Exit:
                continue
            except click.ClickException as e:
                console.print(f"[red]{e.format_message()}[/red]")
                continue
            params = ctx.params
            try:
                _run_build(server, params["command"], params["use_sandboxfs"],
                           params["sandboxfs_path"], params["sandbox_debug"])
            except ValueError as e:
                console.print(f"[red]{e}[/red]")
    finally:
        server.shutdown()


def _print_status(server):
    tracing = "on" if cloudwatch.enabled() else "off"
    server.console.print(f"  [dim]CloudWatch tracing {tracing}[/dim]")
    process = server.sandbox
    if process is None:
        server.console.print("[dim]No sandboxfs process.[/dim]")
        return
    alive = server.controller.supervisor.is_alive(process)
    state = process.state.value if alive else "terminated"
    server.console.print(f"  sandboxfs pid {process.pid}  [bold]{state}[/bold]")
    server.console.print(f"  [dim]{process.mount_path}[/dim]")

