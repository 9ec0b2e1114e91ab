import asyncio
import time
from typing import Any

import aiohttp
import click
import psutil

from ..shared.config import Config
from ..shared.config_keys import ConfigKeys
from ..shared.constants import DEFAULT_DEVICE_PORT
from ..shared.exceptions import ConfigurationError
from ..shared.utils import format_duration_hms
from . import main as app_main

ADMIN_TIMEOUT = 5.0
STOP_WAIT = 10.0

_WILDCARD_HOSTS = {"", "0.0.0.0", "::"}


def _running_pid() -> int | None:
    """Pid of the bridge that owns the pid file, clearing the file if it is stale."""
    pid_file = app_main.pid_file_path()
    try:
        pid = int(pid_file.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        pid = None
    if pid is not None and psutil.pid_exists(pid):
        return pid
    pid_file.unlink(missing_ok=True)
    return None


def _admin_base_url(config: Config) -> str | None:
    if not config.get(ConfigKeys.HTTP_ENABLED, True):
        return None
    host = config.get(ConfigKeys.HTTP_HOST) or ""
    if host in _WILDCARD_HOSTS:
        host = "127.0.0.1"
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{config.get(ConfigKeys.HTTP_PORT)}"


async def _admin_call(
    base_url: str, method: str, path: str, payload: dict[str, Any] | None = None
) -> tuple[int, dict[str, Any]]:
    timeout = aiohttp.ClientTimeout(total=ADMIN_TIMEOUT)
    async with aiohttp.ClientSession(base_url=base_url, timeout=timeout) as session:
        async with session.request(method, path, json=payload) as resp:
            body = await resp.json(content_type=None)
            return resp.status, body if isinstance(body, dict) else {"data": body}


def _call_admin(method: str, path: str, payload: dict[str, Any] | None = None) -> tuple[int, dict[str, Any]]:
    base_url = _admin_base_url(app_main.load_config())
    if base_url is None:
        raise click.ClickException("admin HTTP is disabled (HTTP_ENABLED=false)")
    try:
        return asyncio.run(_admin_call(base_url, method, path, payload))
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        raise click.ClickException(f"admin HTTP unreachable at {base_url}: {e}") from e


def _cmd_status() -> int:
    pid = _running_pid()
    if pid is None:
        click.echo("stopped")
        return 2
    try:
        proc = psutil.Process(pid)
        rss = proc.memory_info().rss / (1024 * 1024)
        uptime = format_duration_hms(time.time() - proc.create_time())
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        click.echo("stopped")
        return 2
    click.echo(f"running pid={pid} uptime={uptime} rss={rss:.1f}MB")
    try:
        _, health = _call_admin("GET", "/health")
    except click.ClickException as e:
        click.echo(e.format_message())
        return 0
    click.echo(
        f"slack={health.get('slack')} devices={health.get('devices')} messages={health.get('messages')}"
    )
    return 0


def _cmd_down(timeout: float) -> int:
    pid = _running_pid()
    if pid is None:
        click.echo("slack-signal is not running", err=True)
        return 2
    stop_file = app_main.stop_file_path()
    stop_file.parent.mkdir(parents=True, exist_ok=True)
    stop_file.write_text(str(time.time()), encoding="utf-8")
    try:
        proc = psutil.Process(pid)
        try:
            proc.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            click.echo(f"no clean exit after {timeout:g}s; terminating", err=True)
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                proc.kill()
    except psutil.NoSuchProcess:
        pass
    finally:
        stop_file.unlink(missing_ok=True)
        app_main.pid_file_path().unlink(missing_ok=True)
    click.echo(f"slack-signal stopped (pid={pid})")
    return 0


async def _ws_test(url: str, hello: str | None) -> int:
    async with aiohttp.ClientSession() as session:
        try:
            ws = await session.ws_connect(url)
        except (aiohttp.ClientError, OSError) as e:
            click.echo(f"error: {e}", err=True)
            return 1
        click.echo("open")
        if hello:
            await ws.send_str(hello)
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                click.echo(f"message: {msg.data}")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                click.echo(f"error: {ws.exception()}", err=True)
                break
        click.echo(f"closed {ws.close_code}")
    return 0


@click.group(
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.pass_context
def app(ctx: click.Context) -> None:
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        raise click.exceptions.Exit(0)


@app.command()
def up() -> None:
    """Run the bridge in the foreground (Ctrl+C or `down` to stop)."""
    pid = _running_pid()
    if pid is not None:
        click.echo(f"slack-signal is already running (pid={pid})", err=True)
        raise click.exceptions.Exit(2)
    raise click.exceptions.Exit(app_main.main())


@app.command()
@click.option("--timeout", default=STOP_WAIT, show_default=True, help="Seconds to wait for a clean exit.")
def down(timeout: float) -> None:
    """Ask the running bridge to shut down."""
    raise click.exceptions.Exit(_cmd_down(timeout))


@app.command()
def status() -> None:
    """Show the running bridge and its Slack and device state."""
    raise click.exceptions.Exit(_cmd_status())


@app.command()
@click.argument("text")
@click.option("--user", "user_id", default=None, help="Slack user id; defaults to SLACK_DEFAULT_USER_ID.")
def send(text: str, user_id: str | None) -> None:
    """Send TEXT to a Slack user through the running bridge."""
    payload: dict[str, Any] = {"text": text}
    if user_id:
        payload["userId"] = user_id
    status_code, body = _call_admin("POST", "/send", payload)
    if not body.get("ok"):
        click.echo(f"send failed ({status_code}): {body.get('reason')}", err=True)
        raise click.exceptions.Exit(1)
    click.echo(f"sent channel={body.get('channel')} ts={body.get('ts')}")


@app.command("mark-read")
@click.argument("message_id")
def mark_read(message_id: str) -> None:
    """Mark a stored DM as read, as a device would."""
    status_code, body = _call_admin("POST", "/mark-read", {"messageId": message_id})
    if not body.get("ok"):
        click.echo(f"mark-read failed ({status_code}): {body.get('reason')}", err=True)
        raise click.exceptions.Exit(1)
    click.echo(f"marked read: {message_id}")


@app.command("ws-test")
@click.option("--url", default=f"ws://localhost:{DEFAULT_DEVICE_PORT}", show_default=True)
@click.option("--hello", default="hello from test client", show_default=True)
def ws_test(url: str, hello: str) -> None:
    """Connect to the device socket and print every frame received."""
    try:
        code = asyncio.run(_ws_test(url, hello or None))
    except KeyboardInterrupt:
        code = 130
    raise click.exceptions.Exit(code)


def main() -> int:
    try:
        result = app.main(prog_name="slack-signal", standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.exceptions.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except ConfigurationError as e:
        click.echo(f"Startup error: {e}", err=True)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
