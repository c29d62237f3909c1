"""
Setup script for Memory Engineering
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="memory-engineering",
    version="1.0.0",
    author="Memory Engineering",
    description="Persistent project memory and hybrid code search for AI coding assistants (MCP server)",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["memory_engineering", "memory_engineering.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.0", "pytest-asyncio>=0.21"],
    },
    entry_points={
        "console_scripts": [
            "memory-engineering=memory_engineering.server:main",
            "memory-engineering-cli=memory_engineering.cli:main",
        ],
    },
)
