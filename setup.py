from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="beacon_analyzer",
    version="0.1.0",
    author="Network Security Team",
    author_email="security@example.com",
    description="C2 beaconing detection for network connection logs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/example/beacon_analyzer",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
        "Topic :: System :: Networking :: Monitoring",
        "Topic :: Security",
    ],
    python_requires=">=3.11",
    install_requires=[
        "netaddr>=1.0.0",
        "aiohttp>=3.8.0",
        "orjson>=3.8.0",
        "tqdm>=4.65.0",
        "pyyaml>=6.0.0",
        "numpy>=1.23.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
            "mypy>=1.0.0",
            "isort>=5.10.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "beacon-analyze=beacon_analyzer.cli:main",
        ],
    },
)
