from setuptools import find_packages, setup

setup(
    name="sqlbulk",
    version="0.3.0",
    description="Staged bulk inserts into SQL Server with identity round-trip",
    packages=find_packages(include=["sqlbulk", "sqlbulk.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pandas>=2.0",
        "pydantic>=2.0",
        "sqlalchemy>=2.0",
        "pyodbc>=5.0",
        "pyyaml>=6.0",
        "rich>=13.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
)
