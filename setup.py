from setuptools import setup, find_packages

setup(
    name="lorawatch",
    version="0.1.0",
    description="Telemetry ingestion and online/offline tracking for LoRa sensor nodes",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    install_requires=[
        "numpy>=1.24.0",
        "pandas>=2.0.0",
        "httpx>=0.24.0",
        "click>=8.0.0",
        "fastapi>=0.100.0",
        "pydantic>=2.0.0",
        "sqlalchemy>=2.0.0",
        "uvicorn>=0.23.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "lorawatch=lorawatch.cli:main",
        ],
    },
)
