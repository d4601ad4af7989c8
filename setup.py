from setuptools import setup, find_packages

setup(
    name="local-replanner",
    version="1.0.0",
    packages=find_packages(include=["local_replanner", "local_replanner.*"]),
    install_requires=[
        "numpy>=1.21.0",
        "scipy>=1.7.0",
        "PyYAML>=6.0",
        "matplotlib>=3.5.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    author="local-replanner Team",
    description="Online B-spline local trajectory replanning over a depth-camera distance field",
    python_requires=">=3.8",
)
