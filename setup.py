"""
pgforge - Schema-First PostgreSQL Repository Generator
Install: pip install -e .
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="pgforge",
    version="0.1.0",
    author="pgforge contributors",
    author_email="",
    description="Generate typed async PostgreSQL repositories from your schema and SQL",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["pgforge", "pgforge.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Code Generators",
        "Topic :: Database",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "psycopg[binary]>=3.1",
        "pydantic>=2.0.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pgforge=pgforge.cli:cli_main",
        ],
    },
    keywords="postgresql, psycopg, generator, repository, code-generator, crud, pagination",
)
