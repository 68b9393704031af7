#!/usr/bin/env python3
"""
Setup configuration for the net-worth history engine package
"""

from setuptools import setup, find_packages

setup(
    name="networth-history",
    version="1.0.0",
    description="Portfolio history reconstruction and aggregation engine",
    packages=find_packages(include=["networth_history", "networth_history.*"]),
    python_requires=">=3.9",
    install_requires=[
        "aiohttp>=3.8.0",
        "pydantic>=2.0.0",
        "python-dotenv>=1.0.0",
        "snaptrade-python-sdk>=11.0.0",
        "supabase>=2.0.0",
        "urllib3>=1.26.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.10.0",
        ],
    },
)
