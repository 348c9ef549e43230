from __future__ import annotations

import json
import os
import signal
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from poolmaster.errors import ConfigError

DEFAULT_CONFIG_FILE = "poolmaster.toml"


@dataclass(slots=True)
class PoolConfig:
    workers: int | None = None
    fork_delay_seconds: float = 1.0
    poll_interval_seconds: float = 1.0

    def resolved_workers(self) -> int:
        if self.workers is None:
            return os.cpu_count() or 1
        return self.workers


@dataclass(slots=True)
class WorkerConfig:
    module: str = "poolmaster.worker"
    args: list[str] = field(default_factory=list)
    host: str = "0.0.0.0"
    port: int = 3000
    static_dir: str | None = None
    drain_timeout_seconds: float = 10.0
    disconnect_signal: str = "SIGINT"

    def command(self, environment: str) -> list[str]:
        command = [
            sys.executable,
            "-m",
            self.module,
            "--host",
            self.host,
            "--port",
            str(self.port),
            "--drain-timeout",
            _toml_value(self.drain_timeout_seconds),
            "--env",
            environment,
        ]
        if self.static_dir is not None:
            command += ["--static-dir", self.static_dir]
        return [*command, *self.args]


@dataclass(slots=True)
class RuntimeConfig:
    environment: str = "development"


@dataclass(slots=True)
class PoolmasterConfig:
    pool: PoolConfig = field(default_factory=PoolConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    @classmethod
    def default(cls) -> PoolmasterConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PoolmasterConfig:
        try:
            config = cls(
                pool=PoolConfig(**data.get("pool", {})),
                worker=WorkerConfig(**data.get("worker", {})),
                runtime=RuntimeConfig(**data.get("runtime", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.pool.workers is not None and self.pool.workers < 0:
            raise ConfigError(f"pool.workers must be >= 0, got {self.pool.workers}")
        if self.pool.fork_delay_seconds < 0:
            raise ConfigError("pool.fork_delay_seconds must be >= 0")
        if self.pool.poll_interval_seconds <= 0:
            raise ConfigError("pool.poll_interval_seconds must be > 0")
        if self.worker.drain_timeout_seconds <= 0:
            raise ConfigError("worker.drain_timeout_seconds must be > 0")
        if not isinstance(getattr(signal, self.worker.disconnect_signal, None), signal.Signals):
            raise ConfigError(f"Unknown disconnect signal: {self.worker.disconnect_signal}")

    def to_dict(self) -> dict:
        pool: dict[str, object] = {
            "fork_delay_seconds": self.pool.fork_delay_seconds,
            "poll_interval_seconds": self.pool.poll_interval_seconds,
        }
        if self.pool.workers is not None:
            pool = {"workers": self.pool.workers, **pool}
        worker: dict[str, object] = {
            "module": self.worker.module,
            "args": list(self.worker.args),
            "host": self.worker.host,
            "port": self.worker.port,
            "drain_timeout_seconds": self.worker.drain_timeout_seconds,
            "disconnect_signal": self.worker.disconnect_signal,
        }
        if self.worker.static_dir is not None:
            worker["static_dir"] = self.worker.static_dir
        return {
            "pool": pool,
            "worker": worker,
            "runtime": {
                "environment": self.runtime.environment,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PoolmasterConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("pool", "worker", "runtime"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PoolmasterConfig:
    if not path.exists():
        return PoolmasterConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return PoolmasterConfig.from_dict(data)


def save_config(path: Path, config: PoolmasterConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
