#!/usr/bin/env python3
"""
Chiral Reputation Setup Script
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme = Path(__file__).parent / "README.md"
long_description = readme.read_text(encoding="utf-8") if readme.exists() else ""

# Read requirements
requirements = Path(__file__).parent / "chiral_requirements.txt"
install_requires = []
if requirements.exists():
    install_requires = requirements.read_text().strip().split('\n')
    install_requires = [r.strip() for r in install_requires if r.strip() and not r.startswith('#')]

setup(
    name="chiral-reputation",
    version="0.1.0",
    description="Transaction-backed peer reputation and blacklisting for the Chiral P2P network",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Chiral Network Team",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*", "docs"]),
    py_modules=["api_server"],
    python_requires=">=3.11",
    install_requires=install_requires,
    extras_require={
        "dev": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-cov>=4.1.0",
            "httpx>=0.26.0",
            "black>=24.0.0",
            "flake8>=7.0.0",
            "mypy>=1.8.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "chiral-reputation-server=api_server:main",
            "chiral-reputation=chiral.p2p.cli.reputation_cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Networking",
    ],
    keywords="p2p reputation trust blacklist file-sharing blockchain",
)
