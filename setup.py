import os
from setuptools import setup, find_packages

setup(
    name="activity-ingestion",
    version="0.1.0",
    package_dir={"": "services/activity_ingestion/src"},
    packages=find_packages(where="services/activity_ingestion/src"),
    install_requires=[
        "fastapi>=0.110.0",
        "uvicorn>=0.27.0",
        "python-multipart>=0.0.9",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "fitparse>=1.2.0",
        "lxml>=5.0.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        "redis>=5.0.0",
        "prometheus-client>=0.19.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "httpx>=0.26.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "activity-ingestion=activity_ingestion.main:main",
        ],
    },
    author="Aiden Gindin",
    author_email="aiden@aidengindin.com",
    description="Activity file ingestion and normalization service",
    long_description=open("README.md").read() if os.path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    url="https://github.com/aidengindin/KineticAI",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
)
