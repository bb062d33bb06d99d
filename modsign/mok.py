# SPDX-License-Identifier: LGPL-2.1-or-later

"""Operator commands that inspect or change the firmware Machine Owner Key database.

Each command is independent of the others and of the build pipeline and reports success via its return value
so it can be mapped to an exit status.
"""

import logging
import re
import subprocess
import sys

from modsign.context import Context
from modsign.keys import SigningKeyPair, certificate_details
from modsign.kmod import loaded_modules, normalize_module_name
from modsign.log import log_notice


def signing_key_pair(context: Context) -> SigningKeyPair:
    return SigningKeyPair.at(context.key_directory)


def common_name(subject: str) -> str:
    if m := re.search(r"CN\s*=\s*([^,/]+)", subject):
        return m.group(1).strip()

    return ""


def show_certificate(context: Context, pair: SigningKeyPair) -> str:
    subject, fingerprint = certificate_details(context, pair)
    logging.info(f"Certificate subject: {subject}")
    logging.info(f"Certificate SHA256 fingerprint: {fingerprint}")
    return common_name(subject) or context.config.common_name


def secure_boot_state(context: Context) -> str:
    result = context.run(["mokutil", "--sb-state"], stdout=subprocess.PIPE, check=False, log=False)
    return (result.stdout or "").strip() or "unknown"


def enroll_certificate(context: Context) -> bool:
    pair = signing_key_pair(context)
    if not pair.der.exists():
        logging.error(f"{pair.der} not found, build the image with a module signing key first")
        return False

    show_certificate(context, pair)

    result = context.run(["mokutil", "--test-key", pair.der], stdout=subprocess.PIPE, check=False, log=False)
    if "already enrolled" in (result.stdout or ""):
        log_notice("The module signing certificate is already enrolled")
        return True

    logging.info("Choose a one-time password, you will be asked for it again on the next boot")
    result = context.run(["mokutil", "--import", pair.der], stdin=sys.stdin, check=False)
    if result.returncode != 0:
        logging.error(f"mokutil --import failed with exit code {result.returncode}")
        return False

    log_notice("Enrollment requested. Reboot and select 'Enroll MOK' in the MOK manager to complete it")
    return True


def check_certificate(context: Context) -> bool:
    pair = signing_key_pair(context)
    logging.info(f"Secure Boot state: {secure_boot_state(context)}")

    if pair.certificate.exists():
        cn = show_certificate(context, pair)
    else:
        logging.warning(f"{pair.certificate} not found, looking for {context.config.common_name!r} instead")
        cn = context.config.common_name

    enrolled = context.run(["mokutil", "--list-enrolled"], stdout=subprocess.PIPE, check=False, log=False)
    if cn in (enrolled.stdout or ""):
        log_notice(f"Certificate {cn!r} is enrolled")
        return True

    pending = context.run(["mokutil", "--list-new"], stdout=subprocess.PIPE, check=False, log=False)
    if cn in (pending.stdout or ""):
        logging.warning(f"Certificate {cn!r} is pending enrollment, reboot to complete it")
    else:
        logging.error(f"Certificate {cn!r} is not enrolled")

    return False


def remove_certificate(context: Context) -> bool:
    pair = signing_key_pair(context)
    if not pair.der.exists():
        logging.error(f"{pair.der} not found, nothing to remove")
        return False

    show_certificate(context, pair)

    result = context.run(["mokutil", "--delete", pair.der], stdin=sys.stdin, check=False)
    if result.returncode != 0:
        logging.error(f"mokutil --delete failed with exit code {result.returncode}")
        return False

    log_notice("Removal requested. Reboot and select 'Delete MOK' in the MOK manager to complete it")
    return True


def probe_module(context: Context) -> bool:
    module = context.config.module

    context.run(["modprobe", "-r", module], check=False, log=False)
    result = context.run(["modprobe", module], check=False)

    if normalize_module_name(module) not in loaded_modules(context):
        logging.error(
            f"{module} is not loaded (modprobe returned {result.returncode}), "
            "check that the signing certificate is enrolled if Secure Boot is enabled"
        )
        return False

    signer = context.run(
        ["modinfo", "-F", "signer", module], stdout=subprocess.PIPE, check=False, log=False
    ).stdout
    log_notice(f"{module} loaded successfully (signer: {(signer or '').strip() or 'none'})")
    return True
