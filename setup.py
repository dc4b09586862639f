#!/usr/bin/env python
"""Setup configuration for Telehealth Sync."""

from setuptools import find_packages, setup

setup(
    name="telehealth-sync",
    version="0.1.0",
    description="Keeps a local mirror of FHIR patients and appointments in sync",
    packages=find_packages(include=["telehealth_sync", "telehealth_sync.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.5.0",
        "sqlalchemy[asyncio]>=2.0.23",
        "aiosqlite>=0.19.0",
        "fhirclient>=4.1.0",
        "cryptography>=41.0.0",
        "httpx>=0.25.0",
        "asyncpg>=0.29.0",
        "pydantic-settings>=2.0.0",
        "structlog>=23.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "telehealth-sync-purge=telehealth_sync.main:main",
        ],
    },
)
