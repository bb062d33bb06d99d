# SPDX-License-Identifier: LGPL-2.1-or-later

import pytest

import modsign.config


@pytest.fixture(autouse=True)
def no_system_config(monkeypatch: pytest.MonkeyPatch) -> None:
    # Never pick up modsign.conf from the machine running the tests.
    monkeypatch.setattr(modsign.config, "SYSTEM_CONFIG_DIRS", ())
