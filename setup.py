from setuptools import setup, find_namespace_packages

setup(
    name="minibox",
    version="0.1.0",
    description="A minimal container runtime: pull, create and run containers under chroot",
    packages=find_namespace_packages(where="src", include=["minibox", "minibox.*"]),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.0",
        "click>=8.0",
        "psutil>=5.9",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
        "dev": [
            "black>=23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "minibox=minibox.CLI.main:main",
        ],
    },
)
