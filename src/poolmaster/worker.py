from __future__ import annotations

import asyncio
import errno
import json
import os
import socket
from pathlib import Path

import click
import uvicorn
from starlette.applications import Starlette
from starlette.routing import Mount
from starlette.staticfiles import StaticFiles

DEFAULT_STATIC_DIR = Path(__file__).with_name("public")
BIND_FAILURE_EXIT_CODE = 3
BIND_ERRORS = {
    errno.EACCES: "{port} requires elevated privileges",
    errno.EADDRINUSE: "{port} is already in use",
}


def build_app(static_dir: Path) -> Starlette:
    return Starlette(
        routes=[Mount("/", app=StaticFiles(directory=str(static_dir), html=True), name="static")]
    )


def bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        # Every worker in the pool binds the same port.
        if hasattr(socket, "SO_REUSEPORT"):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.bind((host, port))
        sock.listen(socket.SOMAXCONN)
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def listening_line(sock: socket.socket) -> str:
    host, port = sock.getsockname()[:2]
    return json.dumps({"event": "listening", "host": host, "port": port, "pid": os.getpid()})


def build_server(app: Starlette, *, drain_timeout: float, environment: str) -> uvicorn.Server:
    config = uvicorn.Config(
        app,
        timeout_graceful_shutdown=max(1, round(drain_timeout)),
        access_log=environment != "production",
        log_level="info",
    )
    return uvicorn.Server(config)


@click.command("worker")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=3000, show_default=True, type=int, envvar="PORT")
@click.option(
    "--static-dir",
    default=DEFAULT_STATIC_DIR,
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
)
@click.option("--drain-timeout", default=10.0, show_default=True, type=float)
@click.option("--env", "environment", default="development", envvar="POOLMASTER_ENV")
@click.pass_context
def main(
    ctx: click.Context,
    host: str,
    port: int,
    static_dir: Path,
    drain_timeout: float,
    environment: str,
) -> None:
    """Serve a static directory until told to drain."""
    if not static_dir.is_dir():
        raise click.ClickException(f"Static directory does not exist: {static_dir}")
    app = build_app(static_dir)

    try:
        sock = bind_socket(host, port)
    except OSError as exc:
        message = BIND_ERRORS.get(exc.errno or 0)
        if message is None:
            raise
        click.secho(message.format(port=port), fg="red", err=True)
        ctx.exit(BIND_FAILURE_EXIT_CODE)

    server = build_server(app, drain_timeout=drain_timeout, environment=environment)
    click.echo(listening_line(sock))
    try:
        asyncio.run(server.serve(sockets=[sock]))
    except KeyboardInterrupt:
        # uvicorn re-raises the captured SIGINT once it has drained.
        pass
    finally:
        sock.close()
    click.secho(f"Worker {os.getpid()}: closed out remaining connections", err=True)


if __name__ == "__main__":
    main()
