from setuptools import setup, find_packages


setup(
    name="capsule",
    version="0.1",
    packages=find_packages(include=["capsule", "capsule.*"]),
    description="Password-protected, single-file backup and restore of application records and files.",
    author="vercingetorx",
    install_requires=[
        "pycryptodomex>=3.23.0",
    ],
    entry_points={
        "console_scripts": [
            "capsule=capsule.cli:main",
        ]
    },
)
