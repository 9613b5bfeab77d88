from setuptools import setup, find_packages

setup(
    name="seqformer",
    version="0.1.0",
    packages=find_packages(include=["src", "src.*"]),
    install_requires=[
        "torch>=2.1.0",
        "transformers>=4.40.0",
        "numpy>=1.24.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
)
