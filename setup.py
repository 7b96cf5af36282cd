#!/usr/bin/python3
# Setup file for fetchpack
# Copyright (C) 2026 The fetchpack Authors
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later

from setuptools import setup

tests_require = ["pytest"]

setup(
    name="fetchpack",
    version="0.1.0",
    description="Client for the Git smart HTTP fetch protocol",
    keywords=["git", "vcs", "http"],
    license="Apache-2.0 OR GPL-2.0-or-later",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX",
        "Topic :: Software Development :: Version Control",
    ],
    python_requires=">=3.9",
    packages=["fetchpack"],
    package_data={"": ["py.typed"]},
    install_requires=["urllib3>=2.0"],
    extras_require={"tests": tests_require},
    entry_points={"console_scripts": ["fetchpack=fetchpack.cli:_main"]},
)
