from setuptools import setup, find_namespace_packages

setup(
    name="stackup",
    version="0.1.0",
    description="Start interdependent local services in dependency order",
    packages=find_namespace_packages(where="src", include=["stackup*"]),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "psutil>=5.9",
        "tenacity>=8.2,<9.2",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
        "dev": ["black>=23.0", "pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "stackup=stackup.CLI.main:main",
        ],
    },
)
