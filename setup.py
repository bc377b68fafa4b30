from setuptools import setup, find_packages

setup(
    name="agentscript",
    version="0.1.0",
    description="Pipeline language and concurrent execution engine for AI agent commands",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"agentscript": ["*.lark"]},
    install_requires=[
        "lark",
        "pydantic>=2.0",
        "networkx>=3.0",
        "loguru>=0.7",
        "openai",
        "anthropic",
        "google-generativeai",
        "mistralai>=1.0",
        "cohere>=5.0",
        "requests",
        "python-dotenv",
        "opentelemetry-api",
        "opentelemetry-sdk",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "agentscript=agentscript.cli:main",
        ],
    },
    python_requires=">=3.10",
)
