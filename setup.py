"""
Setup script for Resource Guard
"""
from setuptools import setup, find_packages


setup(
    name="resource-guard",
    version="1.0.0",
    description="Resource lifecycle and process supervision for test suites",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "psutil>=5.9",
        "rich>=13.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    zip_safe=False,
)
