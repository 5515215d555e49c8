"""Setup configuration for backupctl."""

from setuptools import setup, find_packages

setup(
    name="backupctl",
    version="1.0.0",
    description="Scheduled backup execution engine for Proxmox VE clusters",
    author="Your Name",
    packages=find_packages(include=["backupctl", "backupctl.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "httpx>=0.25.0",
        "cryptography>=41.0.0",
        "croniter>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "respx>=0.20.2",
            "tzdata>=2023.3",
        ],
    },
    entry_points={
        "console_scripts": [
            "backupctl=backupctl.cli:cli",
        ],
    },
    python_requires=">=3.9",
)
