from setuptools import setup, find_packages

setup(
    name="queuectl",
    version="1.0.0",
    description="A CLI-based background job queue that runs shell commands with timeouts, retries and a dead letter queue",
    author="Backend Developer",
    packages=find_packages(include=["queuectl", "queuectl.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "queuectl=queuectl.cli:main",
        ],
    },
    python_requires=">=3.8",
)
