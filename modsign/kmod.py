# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import enum
import logging
import os
import re
import shutil
import subprocess
import textwrap
from pathlib import Path

from modsign.context import Context
from modsign.kernel import KernelTarget
from modsign.keys import SigningKeyPair
from modsign.log import complete_step, die
from modsign.util import StrEnum

# Appended by scripts/sign-file after the PKCS#7 signature blob.
MODULE_SIGNATURE_MARKER = b"~Module signature appended~\n"

MODULE_SUFFIX_RE = re.compile(r"\.ko(\.(gz|xz|zst))?$")


class ModuleState(StrEnum):
    not_built = enum.auto()
    built = enum.auto()
    signed = enum.auto()
    unsigned = enum.auto()
    installed = enum.auto()
    dependencies_refreshed = enum.auto()

    def successors(self) -> tuple["ModuleState", ...]:
        return {
            ModuleState.not_built: (ModuleState.built,),
            ModuleState.built: (ModuleState.signed, ModuleState.unsigned),
            ModuleState.signed: (ModuleState.installed,),
            ModuleState.unsigned: (ModuleState.installed,),
            ModuleState.installed: (ModuleState.dependencies_refreshed,),
            ModuleState.dependencies_refreshed: (),
        }[self]


@dataclasses.dataclass
class ModuleArtifact:
    name: str
    build_directory: Path
    state: ModuleState = ModuleState.not_built
    signed: bool = False
    installed: list[Path] = dataclasses.field(default_factory=list)

    @property
    def object(self) -> Path:
        return self.build_directory / f"{self.name}.ko"

    def transition(self, state: ModuleState) -> None:
        if state not in self.state.successors():
            raise ValueError(f"Module {self.name} cannot go from {self.state} to {state}")

        logging.debug(f"Module {self.name}: {self.state} -> {state}")
        self.state = state


def loaded_modules(context: Context) -> list[str]:
    # Loaded modules are listed with underscores but the filenames might use dashes instead.
    return [
        normalize_module_name(line.split()[0])
        for line in context.path("/proc/modules").read_text().splitlines()
        if line.strip()
    ]


def normalize_module_name(name: str) -> str:
    # Replace '_' by '-'
    return name.replace("_", "-")


def module_path_to_name(path: Path) -> str:
    return normalize_module_name(path.name.partition(".")[0])


def is_module_file(path: Path) -> bool:
    return MODULE_SUFFIX_RE.search(path.name) is not None and (path.is_file() or path.is_symlink())


def is_compressed_module(path: Path) -> bool:
    return not path.name.endswith(".ko")


def find_module_files(directory: Path, name: str) -> list[Path]:
    """Find every copy of module `name` below `directory`, ignoring backups."""
    if not directory.is_dir():
        return []

    return sorted(
        p
        for p in directory.rglob("*.ko*")
        if is_module_file(p) and module_path_to_name(p) == normalize_module_name(name)
    )


def is_signed(path: Path) -> bool:
    with path.open("rb") as f:
        f.seek(0, os.SEEK_END)
        if f.tell() < len(MODULE_SIGNATURE_MARKER):
            return False

        f.seek(-len(MODULE_SIGNATURE_MARKER), os.SEEK_END)
        return f.read() == MODULE_SIGNATURE_MARKER


def makefile(name: str, kdir: Path) -> str:
    return textwrap.dedent(
        f"""\
        obj-m += {name}.o
        KDIR := {kdir}
        PWD := $(shell pwd)

        default:
        \t$(MAKE) -C $(KDIR) M=$(PWD) modules

        clean:
        \t$(MAKE) -C $(KDIR) M=$(PWD) clean

        .PHONY: default clean
        """
    )


def log_build_directory(artifact: ModuleArtifact) -> None:
    logging.info(f"Contents of {artifact.build_directory}:")
    for p in sorted(artifact.build_directory.iterdir()):
        logging.info(f"  {p.name}")


def stage_module_source(context: Context, artifact: ModuleArtifact) -> None:
    source = context.config.source
    if not source.is_file():
        die(f"Module source {source} not found", hint="Stage the module source or set Source=")

    if artifact.build_directory.exists():
        shutil.rmtree(artifact.build_directory)

    artifact.build_directory.mkdir(parents=True)
    shutil.copy2(source, artifact.build_directory / f"{artifact.name}.c")


def compile_module(context: Context, target: KernelTarget, artifact: ModuleArtifact) -> None:
    (artifact.build_directory / "Makefile").write_text(makefile(artifact.name, target.build_directory))

    with complete_step(f"Building {artifact.name} kernel module…"):
        try:
            context.run(["make", "-C", artifact.build_directory])
        except subprocess.CalledProcessError:
            log_build_directory(artifact)
            die(f"Failed to build {artifact.object.name}")

    if not artifact.object.exists():
        log_build_directory(artifact)
        die(f"Failed to build {artifact.object.name}", hint="make succeeded but produced no module")

    logging.info(f"Successfully built {artifact.object.name}")
    artifact.transition(ModuleState.built)


def sign_module(context: Context, target: KernelTarget, pair: SigningKeyPair, path: Path) -> bool:
    if not target.sign_file.exists():
        logging.warning(
            f"{target.sign_file} not found, {path.name} will not be signed "
            "and will fail to load when Secure Boot is enforced"
        )
        return False

    try:
        context.run([target.sign_file, context.config.digest, pair.key, pair.certificate, path])
    except subprocess.CalledProcessError:
        die(f"Failed to sign {path}")

    return True


def build_module(context: Context, target: KernelTarget, pair: SigningKeyPair) -> ModuleArtifact:
    artifact = ModuleArtifact(name=context.config.module, build_directory=context.config.build_directory)

    stage_module_source(context, artifact)
    compile_module(context, target, artifact)

    with complete_step(f"Signing {artifact.object.name}…"):
        signed = sign_module(context, target, pair, artifact.object)

    artifact.signed = signed
    artifact.transition(ModuleState.signed if signed else ModuleState.unsigned)

    return artifact
