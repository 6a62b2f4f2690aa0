from setuptools import setup, find_packages

setup(
    name="triton-k8s",
    version="0.3.0",
    packages=find_packages(include=["triton_k8s", "triton_k8s.*"]),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "boto3",
        "botocore",
        "cli-core-yo>=2",
        "pydantic>=2",
        "PyYAML",
        "rich",
        "typer",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": ["triton-k8s=triton_k8s.cli:main"],
    },
)
