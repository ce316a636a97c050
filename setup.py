"""
PerpGuard Core - Setup Configuration

Risk control for an automated perpetual futures trading loop: circuit
breaker, anomaly detection, dynamic stop-loss and a pre-trade risk gate.
"""

from setuptools import setup, find_namespace_packages
from pathlib import Path

# Read README for long description
readme_path = Path(__file__).parent / "README.md"
long_description = ""
if readme_path.exists():
    long_description = readme_path.read_text(encoding="utf-8")

# Read requirements
requirements_path = Path(__file__).parent / "requirements.txt"
requirements = []
if requirements_path.exists():
    with open(requirements_path) as f:
        requirements = [
            line.strip()
            for line in f
            if line.strip() and not line.startswith("#")
        ]

setup(
    name="perpguard-core",
    version="1.0.0",
    description="Circuit breaker and anomaly detection for perpetual futures trading",
    long_description=long_description,
    long_description_content_type="text/markdown",
    # src/ and scripts/ carry no __init__.py
    packages=find_namespace_packages(include=["src", "src.*", "scripts"]),
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-cov>=4.0.0",
            "httpx>=0.25.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "perpguard-init-db=scripts.init_db:main",
            "perpguard-breaker=scripts.circuit_breaker:main",
            "perpguard-api=src.api.main:run_server",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Office/Business :: Financial :: Investment",
    ],
    keywords="trading, cryptocurrency, perpetual futures, risk control, circuit breaker",
    include_package_data=True,
    package_data={
        "": ["*.yaml"],
    },
)
