from setuptools import setup, find_packages

setup(
    name="examprep",
    version="0.1.0",
    packages=find_packages(include=["examprep", "examprep.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "sqlalchemy[asyncio]>=2.0",
        "asyncpg>=0.29",
        "pydantic>=2.7",
        "pydantic-settings>=2.7",
        "redis>=5.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "aiosqlite>=0.20",
            "httpx>=0.27",
        ],
    },
)
