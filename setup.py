from setuptools import setup, find_packages

setup(
    name="compci",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "click>=8.0.0",
        "requests>=2.25.0",
        "fastapi>=0.100.0",
        "uvicorn>=0.20.0",
        "pydantic>=2.0",
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "redis>=5.0.1",
        "python-dotenv>=1.0.0",
        "selenium>=4.10.0",
        "retrying>=1.3.4",
        "filelock>=3.12.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "httpx>=0.24",
        ],
    },
    entry_points={
        "console_scripts": [
            "compci=compci.cli:cli",
            "compci-worker=compci.worker:main",
        ],
    },
    description="Worker that runs browser test jobs for versioned components",
    python_requires=">=3.10",
)
