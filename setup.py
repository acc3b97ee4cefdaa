from setuptools import setup, find_packages

setup(
    name="perch_search",
    version="0.1.0",
    description="Tabletop object pose recognition as rendering-based multi-heuristic search",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["perch_search", "perch_search.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Runtime dependencies
        "numpy",
        "numba",
        "pandas",
        "matplotlib",
        "scipy",
        "networkx",
        "orjson",
    ],
    extras_require={
        # Test tooling
        "test": [
            "pytest",
        ],
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            # CLI entry point for running main.py
            "perch-search=perch_search.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
