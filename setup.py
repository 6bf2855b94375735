from setuptools import setup, find_packages

setup(
    name="meshflash",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=[
        "pyserial",
        "requests",
        "tqdm",
    ],
    extras_require={
        "test": ["pytest"],
    },
    package_data={
        "meshflash": ["data/hardware.json"],
    },
    author="Henrik Olsson",
    author_email="henols@gmail.com",
    description="Firmware discovery, download and flashing for Meshtastic devices",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    url="https://github.com/henols/meshflash",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
