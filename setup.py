from setuptools import find_packages, setup

setup(
    name="station-reconciler",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_dir={"": "."},
    python_requires=">=3.10",
    install_requires=[
        "sqlalchemy>=2.0.0",
        "psycopg2-binary>=2.9",
        "loguru>=0.7.0",
        "python-dotenv>=1.0.0",
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "requests>=2.31",
        "urllib3>=2.0",
        "pybreaker>=1.0",
        "cachetools>=5.3",
        "prometheus-client>=0.19",
    ],
    extras_require={
        "test": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "station-reconciler=station_reconciler.main:main",
        ],
    },
)
