#!/usr/bin/env python3
"""
Incident Escalation Engine - Setup Script
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

# Read requirements
requirements = []
with open(this_directory / "requirements.txt") as f:
    for line in f:
        line = line.strip()
        if line and not line.startswith("#"):
            requirements.append(line)

setup(
    name="incident-escalation-engine",
    version="1.0.0",
    author="Incident Engine Team",
    author_email="incident-engine@company.com",
    description="Incident correlation and escalation engine: alert deduplication, escalation policies, quiet hours and notification delivery",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/company/incident-escalation-engine",

    packages=find_packages(include=["incident_engine", "incident_engine.*"]),

    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Intended Audience :: Developers",
        "Topic :: System :: Monitoring",
        "Topic :: System :: Systems Administration",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
    ],

    python_requires=">=3.10",
    install_requires=requirements,

    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.11.0",
            "pytest-cov>=4.1.0",
            "flake8>=6.0.0",
            "black>=23.0.0",
            "mypy>=1.4.0",
        ],
    },

    entry_points={
        "console_scripts": [
            "incident-engine=incident_engine.main:cli_main",
        ],
    },

    include_package_data=True,
    zip_safe=False,

    keywords="incident alerting escalation on-call notification deduplication",

    project_urls={
        "Bug Reports": "https://github.com/company/incident-escalation-engine/issues",
        "Source": "https://github.com/company/incident-escalation-engine",
    },
)
