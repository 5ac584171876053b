"""Package setup for Telecom Tax Engine."""

from setuptools import setup, find_packages

setup(
    name="telecom-tax-engine",
    version="1.0.0",
    author="Taofik Bishi",
    description="Multi-jurisdiction telecom tax calculation with auditable records",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(include=["telecom_tax", "telecom_tax.*"]),
    python_requires=">=3.10",
    install_requires=[
        "rich>=13.0",
        "pandas>=2.0",
        "sqlalchemy>=2.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "telecom-tax=telecom_tax.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Office/Business :: Financial :: Accounting",
    ],
    keywords="telecom voip tax multi-jurisdiction exemptions audit",
)
