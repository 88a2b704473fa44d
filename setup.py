"""
Setup configuration for the Legacy Migrator.
Use this for:
- Creating a Distributable Package
- Installing the legacy-migrator console script on a migration host

If you're just setting up another development environment, consider using `pip install -e .[dev]` instead.

For Distributable Package:
- python setup.py sdist bdist_wheel
    (Creates installable .whl files in dist/ folder)
"""

from setuptools import setup, find_packages
from pathlib import Path

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

# Separate main requirements from development requirements
main_requirements = []
dev_requirements = []

for req in requirements:
    if any(dev_pkg in req for dev_pkg in ["pytest", "black", "flake8", "mypy"]):
        dev_requirements.append(req)
    else:
        main_requirements.append(req)

setup(
    name="legacy_migrator",
    version="1.0.0",
    author="Legacy Migrator Team",
    description="Differential migration and reconciliation engine for moving legacy tables into a redesigned schema.",
    long_description=Path("README.md").read_text(encoding="utf-8"),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3.8",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Database",
    ],
    python_requires=">=3.8",
    install_requires=main_requirements,
    extras_require={
        "dev": dev_requirements,
    },
    entry_points={
        "console_scripts": [
            "legacy-migrator=legacy_migrator.cli:main",
        ],
    },
)
