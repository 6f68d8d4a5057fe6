"""Setup script for the mediator package."""

from setuptools import find_packages, setup

setup(
    name="mediator",
    version="0.1.0",
    packages=find_packages(include=["mediator", "mediator.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn>=0.27",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "httpx>=0.27",
        "structlog>=24.1",
        "prometheus-client>=0.19",
        "PyJWT>=2.8",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    description="Mediator - orchestrator between users, a worker model, tool agents and a watchdog model",
    author="Mediator Team",
)
