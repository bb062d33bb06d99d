# SPDX-License-Identifier: LGPL-2.1-or-later

import hashlib
import os
import re
import subprocess
import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from modsign.config import parse_config
from modsign.context import Context
from modsign.kmod import MODULE_SIGNATURE_MARKER
from modsign.run import CompletedProcess
from modsign.util import _FILE, PathString

KVER = "6.11.5-300.fc41.x86_64"
NOW = datetime(2026, 10, 19, 12, 30, 0)

Handler = Callable[[list[str]], tuple[int, str]]


def option(cmdline: Sequence[str], name: str) -> str:
    return cmdline[cmdline.index(name) + 1]


def fake_public_key(path: Path) -> str:
    # Certificates produced by the fake openssl embed the key they were created from, see below.
    data = path.read_bytes()
    for prefix in (b"DER\n", b"CERT\n"):
        data = data.removeprefix(prefix)
    return hashlib.sha256(data).hexdigest()


class FakeRunner:
    """Stand-in for modsign.run.run() that records every command line and simulates its effects."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.handlers: dict[str, Handler] = {
            "rpm": lambda cmd: (0, f"{KVER}\n"),
            "openssl": self.openssl,
            "make": self.make,
            "sign-file": self.sign_file,
        }

    def __call__(
        self,
        cmdline: Sequence[PathString],
        check: bool = True,
        stdin: _FILE = None,
        stdout: _FILE = None,
        stderr: _FILE = None,
        input: Optional[str] = None,
        env: Mapping[str, str] = {},
        log: bool = True,
        success_exit_status: Sequence[int] = (0,),
    ) -> CompletedProcess:
        cmd = [os.fspath(c) for c in cmdline]
        self.calls.append(cmd)

        rc, out = self.handlers.get(Path(cmd[0]).name, lambda cmd: (0, ""))(cmd)

        if check and rc not in success_exit_status:
            raise subprocess.CalledProcessError(rc, cmd)

        return CompletedProcess(cmd, rc, out, "")

    def commands(self, name: str) -> list[list[str]]:
        return [c for c in self.calls if Path(c[0]).name == name]

    def openssl(self, cmd: list[str]) -> tuple[int, str]:
        if cmd[1] == "genpkey":
            Path(option(cmd, "-out")).write_bytes(f"KEY {uuid.uuid4().hex}".encode())
        elif cmd[1] == "req":
            key = Path(option(cmd, "-key")).read_bytes()
            Path(option(cmd, "-out")).write_bytes(b"CERT\n" + key)
        elif cmd[1] == "x509" and "-outform" in cmd:
            crt = Path(option(cmd, "-in")).read_bytes()
            Path(option(cmd, "-out")).write_bytes(b"DER\n" + crt)
        elif "-pubout" in cmd or "-pubkey" in cmd:
            return 0, fake_public_key(Path(option(cmd, "-in")))
        elif "-fingerprint" in cmd:
            return 0, "subject=CN = HP WMI Module Signing Key, O = Bazzite Omen\nsha256 Fingerprint=AA:BB:CC\n"

        return 0, ""

    def make(self, cmd: list[str]) -> tuple[int, str]:
        builddir = Path(option(cmd, "-C"))
        m = re.search(r"obj-m \+= (\S+)\.o", (builddir / "Makefile").read_text())
        assert m
        (builddir / f"{m.group(1)}.ko").write_bytes(b"\x7fELF " + (builddir / f"{m.group(1)}.c").read_bytes())
        return 0, ""

    def sign_file(self, cmd: list[str]) -> tuple[int, str]:
        path = Path(cmd[-1])
        path.write_bytes(path.read_bytes() + b"SIGNATURE" + MODULE_SIGNATURE_MARKER)
        return 0, ""


def encoded_key_material(name: str) -> dict[str, bytes]:
    """Key, certificate and DER certificate that the fake openssl considers to belong together."""
    key = f"INJECTED {name}".encode()
    crt = b"CERT\n" + key
    return {"key": key, "crt": crt, "der": b"DER\n" + crt}


def setup_kernel_tree(root: Path, kver: str = KVER, *, sign_file: bool = True) -> Path:
    kdir = root / "usr/src/kernels" / kver
    (kdir / "scripts").mkdir(parents=True)
    if sign_file:
        (kdir / "scripts/sign-file").write_text("#!/bin/sh\n")
    return kdir


def make_context(
    tmp_path: Path,
    *options: str,
    verb: str = "build",
    environ: Optional[Mapping[str, str]] = None,
    runner: Optional[FakeRunner] = None,
) -> tuple[Context, FakeRunner]:
    root = tmp_path / "root"
    root.mkdir(exist_ok=True)

    source = tmp_path / "ctx/hp-wmi.c"
    if not source.exists():
        source.parent.mkdir(parents=True, exist_ok=True)
        source.write_text("/* hp-wmi */\n")

    args, config = parse_config(
        [
            "-C", os.fspath(tmp_path),
            f"--root={root}",
            f"--source={source}",
            f"--build-directory={tmp_path / 'build'}",
            f"--secrets-directory={tmp_path / 'secrets'}",
            verb,
            *options,
        ]
    )  # fmt: skip

    runner = runner or FakeRunner()
    return Context(args, config, run=runner, environ=environ or {}, now=lambda: NOW), runner
