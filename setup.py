from setuptools import find_packages, setup

with open("tapoklap/version.py") as f:
    exec(f.read())

setup(
    name="python-tapoklap",
    version=__version__,  # type: ignore # noqa: F821
    description="Python API for TP-Link Tapo devices speaking the KLAP protocol",
    url="https://github.com/python-tapoklap/python-tapoklap",
    author="",
    author_email="",
    license="GPLv3",
    packages=find_packages(include=["tapoklap", "tapoklap.*"]),
    install_requires=[
        "aiohttp>=3",
        "asyncclick>=8.1.7",
        "cryptography>=1.9",
        "mashumaro>=3.14",
        "orjson>=3.9",
        "psutil>=5.9",
        "rich>=13",
        "yarl>=1.9",
    ],
    extras_require={
        "test": [
            "pytest>=8",
            "pytest-asyncio>=0.23",
            "pytest-mock>=3.12",
        ],
    },
    python_requires=">=3.11",
    entry_points={"console_scripts": ["tapoklap=tapoklap.cli:cli"]},
    zip_safe=False,
)
