# SPDX-License-Identifier: LGPL-3.0-or-later
from setuptools import setup, find_packages

setup(
    name="hyper2kubevirt",
    version="0.1.0",
    description="Per-VM migration resource convergence for KubeVirt targets",
    packages=find_packages(include=["hyper2kubevirt", "hyper2kubevirt.*"]),
    python_requires=">=3.8",
    install_requires=[l.strip() for l in open("requirements.txt", encoding="utf-8") if l.strip() and not l.startswith("#")],
    extras_require={"test": ["pytest"]},
)
