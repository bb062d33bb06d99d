#!/usr/bin/python3
# SPDX-License-Identifier: LGPL-2.1+

from setuptools import setup, find_packages


setup(
    name="modsign",
    version="1",
    description="Build, sign and install out-of-tree kernel modules for Secure Boot systems",
    license="LGPLv2+",
    python_requires=">=3.9",
    packages = find_packages(".", exclude=["tests"]),
    extras_require = { "test": ["pytest"] },
    entry_points = { "console_scripts": ["modsign = modsign.__main__:main"] },
)
