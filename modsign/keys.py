# SPDX-License-Identifier: LGPL-2.1-or-later

import base64
import binascii
import dataclasses
import logging
import os
import subprocess
import tempfile
import textwrap
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from modsign.config import KeySource
from modsign.context import Context
from modsign.log import complete_step, die, log_step
from modsign.util import umask

KEY_NAME = "module-signing"
KEY_LENGTH = 2048


@dataclasses.dataclass(frozen=True)
class SigningKeyPair:
    key: Path
    certificate: Path
    der: Path

    @classmethod
    def at(cls, directory: Path) -> "SigningKeyPair":
        return cls(
            key=directory / f"{KEY_NAME}.key",
            certificate=directory / f"{KEY_NAME}.crt",
            der=directory / f"{KEY_NAME}.der",
        )

    def files(self) -> tuple[Path, Path, Path]:
        return (self.key, self.certificate, self.der)

    def exists(self) -> bool:
        return all(f.exists() for f in self.files())


@dataclasses.dataclass(frozen=True)
class EncodedPiece:
    name: str
    value: Optional[str]


@dataclasses.dataclass(frozen=True)
class EncodedKeyMaterial:
    """Base64 encoded key material injected into the build from the outside."""

    origin: str
    key: EncodedPiece
    certificate: EncodedPiece
    der: EncodedPiece

    def pieces(self) -> Iterator[tuple[EncodedPiece, Callable[[SigningKeyPair], Path]]]:
        yield self.key, lambda pair: pair.key
        yield self.certificate, lambda pair: pair.certificate
        yield self.der, lambda pair: pair.der

    def missing(self) -> list[str]:
        return [piece.name for piece, _ in self.pieces() if not piece.value]

    def is_empty(self) -> bool:
        return all(not piece.value for piece, _ in self.pieces())


def secret_key_material(context: Context) -> EncodedKeyMaterial:
    def read(name: str) -> EncodedPiece:
        p = context.config.secrets_directory / name
        return EncodedPiece(name=f"secret {p}", value=p.read_text().strip() if p.is_file() else None)

    return EncodedKeyMaterial(
        origin="build secrets",
        key=read(f"{KEY_NAME}-key"),
        certificate=read(f"{KEY_NAME}-crt"),
        der=read(f"{KEY_NAME}-der"),
    )


def build_arg_key_material(context: Context) -> EncodedKeyMaterial:
    return EncodedKeyMaterial(
        origin="build arguments",
        key=EncodedPiece("SigningKeyData=", context.config.signing_key_data),
        certificate=EncodedPiece("SigningCertificateData=", context.config.signing_certificate_data),
        der=EncodedPiece("SigningDerData=", context.config.signing_der_data),
    )


def environment_key_material(context: Context) -> EncodedKeyMaterial:
    def read(name: str) -> EncodedPiece:
        return EncodedPiece(name=f"${name}", value=context.environ.get(name) or None)

    return EncodedKeyMaterial(
        origin="environment",
        key=read("MODULE_SIGNING_KEY"),
        certificate=read("MODULE_SIGNING_CRT"),
        der=read("MODULE_SIGNING_DER"),
    )


KEY_MATERIAL_SOURCES: dict[KeySource, Callable[[Context], EncodedKeyMaterial]] = {
    KeySource.environment: environment_key_material,
    KeySource.secret: secret_key_material,
    KeySource.build_arg: build_arg_key_material,
}


def select_key_material(context: Context) -> Optional[EncodedKeyMaterial]:
    source = context.config.key_source

    if source.is_injected():
        material = KEY_MATERIAL_SOURCES[source](context)
    elif source == KeySource.auto:
        material = next(
            (m for m in (f(context) for f in KEY_MATERIAL_SOURCES.values()) if not m.is_empty()),
            None,
        )
        if material is None:
            return None
    else:
        return None

    if missing := material.missing():
        die(
            f"Incomplete module signing key material in {material.origin}, missing {', '.join(missing)}",
            hint="A private key, a PEM certificate and a DER certificate are all required",
        )

    return material


def write_file(path: Path, data: bytes, mode: int) -> None:
    with umask(~mode & 0o777):
        path.unlink(missing_ok=True)
        path.write_bytes(data)

    os.chmod(path, mode)


def finalize_permissions(pair: SigningKeyPair) -> None:
    os.chmod(pair.key, 0o600)
    os.chmod(pair.certificate, 0o644)
    os.chmod(pair.der, 0o644)


def decode_key_material(material: EncodedKeyMaterial, pair: SigningKeyPair) -> None:
    decoded = []

    for piece, dest in material.pieces():
        assert piece.value
        # Payloads produced by base64(1) are wrapped at 76 columns.
        value = "".join(piece.value.split())
        try:
            decoded += [(dest(pair), base64.b64decode(value, validate=True))]
        except binascii.Error as e:
            die(f"{piece.name} from {material.origin} is not valid base64: {e}")

    for path, data in decoded:
        write_file(path, data, 0o600 if path == pair.key else 0o644)


def finalize_common_name(context: Context) -> str:
    if context.config.temporary_key:
        return f"{context.config.common_name} (temporary {context.now():%Y%m%d%H%M%S})"

    return context.config.common_name


def export_der(context: Context, pair: SigningKeyPair) -> None:
    context.run(
        ["openssl", "x509", "-in", pair.certificate, "-outform", "DER", "-out", pair.der],
        env=dict(OPENSSL_CONF="/dev/null"),
    )


def generate_key_pair(context: Context, pair: SigningKeyPair) -> None:
    """Generate a private key and accompanying X509 certificate using openssl"""

    cn = finalize_common_name(context)
    days = context.config.valid_days
    expiration_date = context.now() + timedelta(days=days)

    log_step(f"Generating keys rsa:{KEY_LENGTH} for CN {cn!r}.")
    logging.info(
        textwrap.dedent(
            f"""
            The keys will expire in {days} days ({expiration_date:%A %d. %B %Y}).
            Remember to roll them over to new ones before then.
            """
        )
    )

    try:
        with umask(~0o600 & 0o777):
            context.run(
                [
                    "openssl", "genpkey",
                    "-algorithm", "RSA",
                    "-pkeyopt", f"rsa_keygen_bits:{KEY_LENGTH}",
                    "-out", pair.key,
                ],
                env=dict(OPENSSL_CONF="/dev/null"),
            )  # fmt: skip

        context.run(
            [
                "openssl", "req",
                "-new",
                "-x509",
                "-key", pair.key,
                "-out", pair.certificate,
                "-days", str(days),
                "-subj", f"/CN={cn}/O={context.config.organization}/",
                "-addext", "basicConstraints=critical,CA:FALSE",
                "-addext", "keyUsage=digitalSignature",
                "-addext", "extendedKeyUsage=codeSigning",
            ],
            env=dict(OPENSSL_CONF="/dev/null"),
        )  # fmt: skip

        export_der(context, pair)
    except subprocess.CalledProcessError:
        die("Failed to generate the module signing key pair")


def public_key(context: Context, *cmdline: str) -> str:
    return context.run(["openssl", *cmdline], stdout=subprocess.PIPE).stdout.strip()


def verify_key_pair(context: Context, pair: SigningKeyPair) -> None:
    keys = {
        pair.key: public_key(context, "pkey", "-in", os.fspath(pair.key), "-pubout"),
        pair.certificate: public_key(context, "x509", "-in", os.fspath(pair.certificate), "-noout", "-pubkey"),
        pair.der: public_key(
            context, "x509", "-inform", "DER", "-in", os.fspath(pair.der), "-noout", "-pubkey"
        ),
    }

    if len(set(keys.values())) != 1:
        die(
            f"The private key and certificates in {pair.key.parent} do not belong together",
            hint="Provide matching key material or remove the key directory to generate a new key pair",
        )


def install_key_material(context: Context, material: EncodedKeyMaterial, pair: SigningKeyPair) -> None:
    # The existing key pair might already be enrolled, so only replace it with material that is known to be
    # complete and consistent.
    with tempfile.TemporaryDirectory(dir=context.key_directory, prefix=".incoming-") as d:
        staged = SigningKeyPair.at(Path(d))
        decode_key_material(material, staged)
        verify_key_pair(context, staged)

        for src, dst in zip(staged.files(), pair.files()):
            os.replace(src, dst)


def provision_signing_key(context: Context) -> SigningKeyPair:
    pair = SigningKeyPair.at(context.key_directory)

    with complete_step("Provisioning module signing key…"):
        material = select_key_material(context)
        context.key_directory.mkdir(parents=True, exist_ok=True, mode=0o755)

        if material:
            logging.info(f"Using module signing key from {material.origin}")
            install_key_material(context, material, pair)
        elif context.config.key_source == KeySource.persistent:
            if missing := [os.fspath(f) for f in pair.files() if not f.exists()]:
                die(
                    f"Persistent module signing key requested but {', '.join(missing)} missing",
                    hint="Bake the key pair into the base image or select a different KeySource=",
                )
            logging.info(f"Using persistent module signing key from {context.key_directory}")
        elif pair.key.exists() and pair.certificate.exists() and not context.args.force:
            # Never rotate an existing key, modules signed with it might already be trusted via an enrolled
            # certificate.
            logging.info(f"Reusing existing module signing key from {context.key_directory}")
            if not pair.der.exists():
                export_der(context, pair)
        else:
            generate_key_pair(context, pair)

        finalize_permissions(pair)
        verify_key_pair(context, pair)

    return pair


def certificate_details(context: Context, pair: SigningKeyPair) -> tuple[str, str]:
    """Return the subject and SHA256 fingerprint of the signing certificate."""
    output = context.run(
        ["openssl", "x509", "-in", pair.certificate, "-noout", "-subject", "-fingerprint", "-sha256"],
        stdout=subprocess.PIPE,
    ).stdout

    subject = fingerprint = ""
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if not sep:
            continue
        if key.strip() == "subject":
            subject = value.strip()
        elif "Fingerprint" in key:
            fingerprint = value.strip()

    return subject, fingerprint
