# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import shutil
import sys

from modsign.config import Args, Config, Verb, create_argument_parser, summary
from modsign.context import Context
from modsign.install import install_and_register, sign_nvidia_modules
from modsign.kernel import prepare_toolchain, resolve_kernel_target
from modsign.keys import provision_signing_key
from modsign.kmod import build_module
from modsign.log import complete_step, log_notice
from modsign.mok import check_certificate, enroll_certificate, probe_module, remove_certificate


def run_build(context: Context) -> None:
    # Every stage runs to completion before the next one starts. Kernel resolution comes first so that a
    # missing build tree aborts before the key directory or the module tree are touched.
    target = prepare_toolchain(context)
    pair = provision_signing_key(context)
    artifact = build_module(context, target, pair)
    install_and_register(context, target, artifact, pair)

    with complete_step(f"Removing {artifact.build_directory}"):
        shutil.rmtree(artifact.build_directory)


def run_sign_nvidia(context: Context) -> None:
    target = resolve_kernel_target(context)
    pair = provision_signing_key(context)
    sign_nvidia_modules(context, target, pair)


OPERATOR_COMMANDS = {
    Verb.enroll: enroll_certificate,
    Verb.status: check_certificate,
    Verb.remove: remove_certificate,
    Verb.test_load: probe_module,
}


def run_verb(args: Args, config: Config, context: Context) -> None:
    if args.verb == Verb.help:
        create_argument_parser().print_help()
        return

    if args.verb == Verb.summary:
        print(summary(config), end="")
        return

    if args.verb == Verb.genkey:
        pair = provision_signing_key(context)
        log_notice(f"Module signing key pair available in {pair.key.parent}")
        return

    if args.verb == Verb.sign_nvidia:
        return run_sign_nvidia(context)

    if args.verb.is_operator_command():
        if not OPERATOR_COMMANDS[args.verb](context):
            sys.exit(1)
        return

    assert args.verb == Verb.build
    logging.debug(f"Provisioning module {config.module} below {config.root}")
    run_build(context)
