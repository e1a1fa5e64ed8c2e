"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="recall-chat",
    version="0.1.0",
    description="Chat API with long-term and session memory",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    entry_points={"console_scripts": ["recall-chat=recall_chat.api.app:main"]},
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.1",
        "google-generativeai>=0.5",
        "google-api-core>=2.11",
        "numpy>=1.24",
        "chromadb>=0.5",
        "prometheus-client>=0.17",
        "opentelemetry-instrumentation-fastapi>=0.41b0",
        "uvicorn>=0.23",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
