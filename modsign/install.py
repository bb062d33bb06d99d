# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import shlex
import shutil
import textwrap
from pathlib import Path

from modsign.context import Context
from modsign.kernel import KernelTarget
from modsign.keys import SigningKeyPair
from modsign.kmod import (
    ModuleArtifact,
    ModuleState,
    find_module_files,
    is_compressed_module,
    is_module_file,
    is_signed,
    sign_module,
)
from modsign.log import complete_step, log_notice
from modsign.util import unique

# Searched relative to /lib/modules/<kver>. akmods puts the driver in extra/nvidia, DKMS in updates/dkms.
NVIDIA_MODULE_DIRECTORIES = (
    "extra/nvidia",
    "extra",
    "updates/dkms",
    "updates",
    "kernel/drivers/video",
    "weak-updates",
)


def backup_path(context: Context, path: Path) -> Path:
    stamp = f"{context.now():%Y%m%d%H%M%S}"
    backup = path.with_name(f"{path.name}.backup.{stamp}")

    n = 1
    while backup.exists():
        backup = path.with_name(f"{path.name}.backup.{stamp}.{n}")
        n += 1

    return backup


def replace_module(context: Context, artifact: ModuleArtifact, existing: Path) -> Path:
    backup = backup_path(context, existing)
    shutil.copy2(existing, backup)
    logging.info(f"Backed up {existing} to {backup.name}")

    # modprobe picks the decompressor from the file extension so a compressed module is replaced by an
    # uncompressed one next to it.
    if is_compressed_module(existing):
        existing.unlink()
        dest = existing.with_name(artifact.object.name)
    else:
        dest = existing

    dest.unlink(missing_ok=True)
    shutil.copy2(artifact.object, dest)
    return dest


def install_module(context: Context, target: KernelTarget, artifact: ModuleArtifact) -> list[Path]:
    moddir = context.modules_directory / target.version

    with complete_step(f"Installing {artifact.object.name}…"):
        if existing := find_module_files(moddir, artifact.name):
            installed = unique([replace_module(context, artifact, p) for p in existing])
            for p in installed:
                logging.info(f"Replaced {p}")
        else:
            extra = moddir / "extra"
            extra.mkdir(parents=True, exist_ok=True)
            shutil.copy2(artifact.object, extra / artifact.object.name)
            installed = [extra / artifact.object.name]
            logging.info(f"Installed {artifact.object.name} to {extra}")

    artifact.installed = installed
    artifact.transition(ModuleState.installed)
    return installed


def refresh_module_dependencies(context: Context, target: KernelTarget, artifact: ModuleArtifact) -> None:
    with complete_step(f"Running depmod for {target.version}"):
        context.run(["depmod", *context.root_options("-b"), "-a", target.version])

    artifact.transition(ModuleState.dependencies_refreshed)


def write_module_config(context: Context) -> None:
    config = context.config

    if config.autoload:
        p = context.path(f"/etc/modules-load.d/{config.module}.conf")
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(f"{config.module}\n")
        logging.info(f"Wrote autoload directive to {p}")

    if config.module_options:
        p = context.path(f"/etc/modprobe.d/{config.module}.conf")
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(f"options {config.module_loaded_name} {' '.join(config.module_options)}\n")
        logging.info(f"Wrote module options to {p}")


def find_nvidia_modules(context: Context, target: KernelTarget) -> list[Path]:
    moddir = context.modules_directory / target.version
    modules: list[Path] = []

    for d in NVIDIA_MODULE_DIRECTORIES:
        if not (moddir / d).is_dir():
            continue

        modules += sorted(p for p in (moddir / d).glob("nvidia*.ko*") if is_module_file(p))

    return unique(modules)


def sign_nvidia_modules(context: Context, target: KernelTarget, pair: SigningKeyPair) -> list[Path]:
    with complete_step("Signing NVIDIA kernel modules…"):
        modules = find_nvidia_modules(context, target)
        if not modules:
            # akmods builds the driver on first boot, in which case there is nothing to sign yet.
            logging.warning(f"No NVIDIA kernel modules found for kernel {target.version}, not signing")
            return []

        signed = []
        for m in modules:
            if is_compressed_module(m):
                logging.warning(f"{m} is compressed, not signing")
                continue

            if sign_module(context, target, pair, m):
                logging.info(f"Signed {m}")
                signed += [m]

    return signed


def recipes(context: Context) -> str:
    config = context.config
    modsign = shlex.join(
        [
            "modsign",
            f"--module={config.module}",
            f"--key-directory={config.key_directory}",
            # Never pick up a modsign.conf from the directory the recipe is run from.
            "--directory=/etc/modsign",
        ]
    )

    return textwrap.dedent(
        f"""\
        # vim: set ft=make :

        # Enroll the {config.module} module signing certificate into the MOK database
        enroll-{config.module}-mok:
            sudo {modsign} enroll

        # Check whether the {config.module} module signing certificate is enrolled
        check-{config.module}-mok:
            {modsign} status

        # Request removal of the {config.module} module signing certificate from the MOK database
        remove-{config.module}-mok:
            sudo {modsign} remove

        # Reload the {config.module} kernel module and report whether it loaded
        test-{config.module}-load:
            sudo {modsign} test-load
        """
    )


def install_recipes(context: Context) -> Path:
    p = context.recipes_directory / f"60-{context.config.module}-mok.just"
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(recipes(context))
    logging.info(f"Installed operator recipes to {p}")
    return p


def install_and_register(
    context: Context,
    target: KernelTarget,
    artifact: ModuleArtifact,
    pair: SigningKeyPair,
) -> None:
    install_module(context, target, artifact)
    refresh_module_dependencies(context, target, artifact)
    write_module_config(context)

    if context.config.sign_nvidia:
        sign_nvidia_modules(context, target, pair)

    install_recipes(context)

    signed = bool(artifact.installed) and all(is_signed(p) for p in artifact.installed)
    log_notice(
        f"{artifact.name} module replacement completed successfully ({'signed' if signed else 'unsigned'})"
    )
