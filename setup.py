from setuptools import setup, find_packages

setup(
    name="tag-topology",
    version="0.1.0",
    description="tag-topology — infer AWS architecture graphs from resource tags",
    author="tag-topology",
    python_requires=">=3.9",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["tag_topology"],
    install_requires=[
        "boto3>=1.34.0",
        "botocore>=1.34.0",
        "requests>=2.31.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "tag-topology=tag_topology:main",
        ],
    },
)
