"""
Setup script for the pdf-conversion-api project.

Allows development installation with `pip install -e .`
(tests: `pip install -e .[test]`)
"""

from setuptools import setup, find_packages

setup(
    name="pdf-conversion-api",
    version="0.1.0",
    packages=find_packages(include=["pdf_api", "pdf_api.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "playwright>=1.40",
        "pymongo>=4.6",
        "redis>=5.0",
        "requests>=2.31",
        "tenacity>=8.2",
        "python-dotenv>=1.0",
        "boto3>=1.34",
        "pypdf>=4.0",
        "reportlab>=4.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
            "httpx>=0.26",
        ],
    },
    entry_points={
        "console_scripts": [
            "pdf-api=pdf_api.cli:main",
        ],
    },
)
