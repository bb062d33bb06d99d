# SPDX-License-Identifier: LGPL-2.1-or-later

import base64
import stat
import textwrap
from pathlib import Path

import pytest

from modsign.keys import (
    SigningKeyPair,
    certificate_details,
    finalize_common_name,
    provision_signing_key,
)

from . import encoded_key_material, make_context


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def contents(pair: SigningKeyPair) -> list[bytes]:
    return [f.read_bytes() for f in pair.files()]


def injected_environment(name: str) -> dict[str, str]:
    material = encoded_key_material(name)
    return {
        "MODULE_SIGNING_KEY": b64(material["key"]),
        "MODULE_SIGNING_CRT": b64(material["crt"]),
        "MODULE_SIGNING_DER": b64(material["der"]),
    }


def write_secrets(directory: Path, name: str) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    for piece, data in encoded_key_material(name).items():
        (directory / f"module-signing-{piece}").write_text(b64(data) + "\n")


def test_generate_fresh_key_pair(tmp_path: Path) -> None:
    context, runner = make_context(tmp_path, verb="genkey")

    pair = provision_signing_key(context)

    assert pair.key == tmp_path / "root/etc/pki/module-signing/module-signing.key"
    assert pair.exists()
    assert mode(pair.key) == 0o600
    assert mode(pair.certificate) == 0o644
    assert mode(pair.der) == 0o644

    req = next(c for c in runner.commands("openssl") if c[1] == "req")
    assert "-subj" in req
    assert req[req.index("-subj") + 1] == "/CN=HP WMI Module Signing Key/O=Bazzite Omen/"
    assert req[req.index("-days") + 1] == "3650"

    genpkey = next(c for c in runner.commands("openssl") if c[1] == "genpkey")
    assert "rsa_keygen_bits:2048" in genpkey


def test_provisioning_is_idempotent(tmp_path: Path) -> None:
    context, runner = make_context(tmp_path, verb="genkey")

    before = contents(provision_signing_key(context))
    after = contents(provision_signing_key(context))

    assert before == after
    assert len([c for c in runner.commands("openssl") if c[1] == "genpkey"]) == 1


def test_force_regenerates_key_pair(tmp_path: Path) -> None:
    context, _ = make_context(tmp_path, verb="genkey")
    before = contents(provision_signing_key(context))

    context, _ = make_context(tmp_path, "--force", verb="genkey")
    after = contents(provision_signing_key(context))

    assert before != after


def test_missing_der_is_exported_from_existing_certificate(tmp_path: Path) -> None:
    context, runner = make_context(tmp_path, verb="genkey")
    pair = provision_signing_key(context)
    key = pair.key.read_bytes()
    pair.der.unlink()

    provision_signing_key(context)

    assert pair.der.exists()
    assert pair.key.read_bytes() == key
    assert len([c for c in runner.commands("openssl") if c[1] == "genpkey"]) == 1


def test_injected_material_wins_over_existing_key(tmp_path: Path) -> None:
    context, _ = make_context(tmp_path, verb="genkey")
    provision_signing_key(context)

    context, runner = make_context(tmp_path, verb="genkey", environ=injected_environment("env"))
    pair = provision_signing_key(context)

    material = encoded_key_material("env")
    assert contents(pair) == [material["key"], material["crt"], material["der"]]
    assert mode(pair.key) == 0o600
    assert not [c for c in runner.commands("openssl") if c[1] in ("genpkey", "req")]


def test_secret_key_source(tmp_path: Path) -> None:
    write_secrets(tmp_path / "secrets", "secret")
    context, _ = make_context(tmp_path, "--key-source=secret", verb="genkey")

    pair = provision_signing_key(context)

    assert pair.key.read_bytes() == encoded_key_material("secret")["key"]


def test_build_arg_key_source(tmp_path: Path) -> None:
    material = encoded_key_material("arg")
    context, _ = make_context(
        tmp_path,
        "--key-source=build-arg",
        f"--signing-key-data={b64(material['key'])}",
        f"--signing-certificate-data={b64(material['crt'])}",
        f"--signing-der-data={b64(material['der'])}",
        verb="genkey",
    )

    pair = provision_signing_key(context)

    assert pair.der.read_bytes() == material["der"]


def test_wrapped_secret_files_are_accepted(tmp_path: Path) -> None:
    directory = tmp_path / "secrets"
    directory.mkdir()
    material = encoded_key_material("wrapped")
    for piece, data in material.items():
        (directory / f"module-signing-{piece}").write_text(textwrap.fill(b64(data), 16) + "\n")
    context, _ = make_context(tmp_path, "--key-source=secret", verb="genkey")

    pair = provision_signing_key(context)

    assert contents(pair) == [material["key"], material["crt"], material["der"]]


def test_wrapped_environment_is_accepted(tmp_path: Path) -> None:
    environ = {k: textwrap.fill(v, 12) + "\n" for k, v in injected_environment("wrapped").items()}
    assert all("\n" in v.strip() for v in environ.values())
    context, _ = make_context(tmp_path, verb="genkey", environ=environ)

    pair = provision_signing_key(context)

    assert pair.certificate.read_bytes() == encoded_key_material("wrapped")["crt"]


def test_explicit_source_ignores_other_sources(tmp_path: Path) -> None:
    write_secrets(tmp_path / "secrets", "secret")
    context, _ = make_context(
        tmp_path, "--key-source=environment", verb="genkey", environ=injected_environment("env")
    )

    pair = provision_signing_key(context)

    assert pair.key.read_bytes() == encoded_key_material("env")["key"]


def test_explicit_source_with_missing_pieces_is_fatal(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    environ = injected_environment("env")
    del environ["MODULE_SIGNING_DER"]
    context, _ = make_context(tmp_path, "--key-source=environment", verb="genkey", environ=environ)

    with pytest.raises(SystemExit) as e:
        provision_signing_key(context)

    assert e.value.code == 1
    assert "MODULE_SIGNING_DER" in caplog.text
    assert not (tmp_path / "root/etc/pki/module-signing").exists()


def test_explicit_source_with_nothing_injected_is_fatal(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    context, _ = make_context(tmp_path, "--key-source=secret", verb="genkey")

    with pytest.raises(SystemExit):
        provision_signing_key(context)

    assert "module-signing-key" in caplog.text
    assert "module-signing-crt" in caplog.text
    assert "module-signing-der" in caplog.text


def test_partial_injection_is_fatal_in_auto_mode(tmp_path: Path) -> None:
    context, _ = make_context(tmp_path, verb="genkey", environ={"MODULE_SIGNING_KEY": b64(b"key")})

    with pytest.raises(SystemExit):
        provision_signing_key(context)


def test_malformed_payload_keeps_existing_key(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    context, _ = make_context(tmp_path, verb="genkey")
    before = contents(provision_signing_key(context))

    environ = injected_environment("env")
    environ["MODULE_SIGNING_CRT"] = "not base64!"
    context, _ = make_context(tmp_path, verb="genkey", environ=environ)

    with pytest.raises(SystemExit):
        provision_signing_key(context)

    assert "$MODULE_SIGNING_CRT" in caplog.text
    assert contents(SigningKeyPair.at(context.key_directory)) == before


def test_mismatched_key_material_keeps_existing_key(tmp_path: Path) -> None:
    context, _ = make_context(tmp_path, verb="genkey")
    pair = provision_signing_key(context)
    before = contents(pair)

    environ = injected_environment("one")
    environ["MODULE_SIGNING_CRT"] = b64(encoded_key_material("two")["crt"])
    context, _ = make_context(tmp_path, verb="genkey", environ=environ)

    with pytest.raises(SystemExit):
        provision_signing_key(context)

    assert contents(pair) == before
    assert mode(pair.key) == 0o600
    assert sorted(context.key_directory.iterdir()) == sorted(pair.files())


def test_persistent_key_source(tmp_path: Path) -> None:
    context, _ = make_context(tmp_path, verb="genkey")
    before = contents(provision_signing_key(context))

    context, runner = make_context(tmp_path, "--key-source=persistent", verb="genkey")

    assert contents(provision_signing_key(context)) == before
    assert not [c for c in runner.commands("openssl") if c[1] == "genpkey"]


def test_persistent_key_source_without_key_is_fatal(tmp_path: Path) -> None:
    context, runner = make_context(tmp_path, "--key-source=persistent", verb="genkey")

    with pytest.raises(SystemExit):
        provision_signing_key(context)

    assert not runner.commands("openssl")


def test_generation_failure_is_fatal(tmp_path: Path) -> None:
    context, runner = make_context(tmp_path, verb="genkey")
    runner.handlers["openssl"] = lambda cmd: (1, "")

    with pytest.raises(SystemExit):
        provision_signing_key(context)


def test_temporary_key_common_name(tmp_path: Path) -> None:
    context, _ = make_context(tmp_path, "--temporary-key=yes", verb="genkey")

    assert finalize_common_name(context) == "HP WMI Module Signing Key (temporary 20261019123000)"


def test_certificate_details(tmp_path: Path) -> None:
    context, _ = make_context(tmp_path, verb="genkey")
    pair = provision_signing_key(context)

    subject, fingerprint = certificate_details(context, pair)

    assert subject == "CN = HP WMI Module Signing Key, O = Bazzite Omen"
    assert fingerprint == "AA:BB:CC"
