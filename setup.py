"""Setup file for development installation."""

from setuptools import setup, find_namespace_packages

setup(
    name="orion-chat",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["orion_chat*"]),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.100",
        "uvicorn>=0.23",
        "pydantic>=2.0",
        "pydantic-core",
        "structlog>=23.1",
        "prometheus-client>=0.17",
        "opentelemetry-instrumentation-fastapi>=0.40b0",
        "google-generativeai>=0.7",
        "google-api-core>=2.11",
        "openai>=1.26",
        "anthropic>=0.25",
        "httpx>=0.27",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": ["orion-chat=orion_chat.api.app:main"],
    },
)
