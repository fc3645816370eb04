from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from typing import Iterable, Optional

import swat


class CASActionError(RuntimeError):
    """An action came back with severity >= 2."""

    def __init__(self, action: str, severity: int, status: Optional[str], messages: Iterable[str]):
        self.action = action
        self.severity = severity
        self.status = status
        self.messages = list(messages or [])
        detail = "; ".join(m.strip() for m in self.messages if m) or (status or "no server message")
        super().__init__(f"{action} failed (severity={severity}): {detail}")


@dataclass
class CASConfig:
    host: str = "localhost"
    port: int = 5570
    username: Optional[str] = None
    password: Optional[str] = None
    protocol: str = "cas"

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "CASConfig":
        # 命令行 > 环境变量 > 默认值
        env = os.environ
        return cls(
            host=args.cas_host or env.get("CAS_HOST", cls.host),
            port=int(args.cas_port or env.get("CAS_PORT", cls.port)),
            username=args.cas_user or env.get("CAS_USERNAME"),
            password=args.cas_password or env.get("CAS_PASSWORD"),
            protocol=args.cas_protocol or env.get("CAS_PROTOCOL", cls.protocol),
        )


def add_cas_args(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
    g = p.add_argument_group("CAS connection")
    g.add_argument("--cas_host", type=str, default=None)
    g.add_argument("--cas_port", type=int, default=None)
    g.add_argument("--cas_user", type=str, default=None, help="省略时使用 ~/.authinfo")
    g.add_argument("--cas_password", type=str, default=None)
    g.add_argument("--cas_protocol", type=str, default=None, choices=["cas", "http", "https"])
    return p


def connect(cfg: CASConfig) -> swat.CAS:
    print(f"Connecting to {cfg.protocol}://{cfg.host}:{cfg.port} ...")
    if cfg.username:
        return swat.CAS(cfg.host, cfg.port, cfg.username, cfg.password, protocol=cfg.protocol)
    return swat.CAS(cfg.host, cfg.port, protocol=cfg.protocol)


def call_action(conn, action: str, /, **params):
    """Run one action and check the result severity.

    Returns the results object unchanged so callers can index result tables
    (``res["OptIterHistory"]``, ``res["ScoreInfo"]``...).
    """
    res = conn.retrieve(action, _messagelevel="error", **params)
    severity = getattr(res, "severity", 0) or 0
    if severity > 1:
        raise CASActionError(action, severity, getattr(res, "status", None), getattr(res, "messages", []))
    if severity == 1:
        for msg in getattr(res, "messages", None) or []:
            print(f"WARNING [{action}]: {msg}")
    return res


def load_actionsets(conn, names: Iterable[str]) -> None:
    for actionset in names:
        call_action(conn, "builtins.loadActionSet", actionSet=actionset)


def drop_table(conn, name: str, quiet: bool = True) -> None:
    call_action(conn, "table.dropTable", name=name, quiet=quiet)
