"""
UniFarm Rewards - accrual, referral and ledger engine for the UniFarm farming app
"""

from setuptools import setup, find_namespace_packages

setup(
    name="unifarm-rewards",
    version="1.0.0",
    description="Reward engine: farming accrual, multi-level referral rewards and a partitioned ledger",
    python_requires=">=3.11",
    packages=find_namespace_packages(include=["shared", "farming", "farming.*", "worker", "ops_api"]),
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn[standard]>=0.24.0",
        "python-telegram-bot>=20.7",
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        "redis>=5.0.0",
        "python-dotenv>=1.0.0",
        "pydantic>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "unifarm-worker=worker.main:run",
            "unifarm-ops-api=ops_api.main:run",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.11",
    ],
)
