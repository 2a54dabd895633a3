"""
Setup script for tiny-agg.
"""

from setuptools import setup, find_packages

setup(
    name="tiny-agg",
    version="0.1.0",
    python_requires=">=3.9",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    package_data={"tiny_agg": ["py.typed"]},
)
