"""
Setup script for GitLab Tree Viewer.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="gitlab-tree-viewer",
    version="1.0.0",
    author="GitLab Tree Viewer",
    description="Aggregate GitLab groups, projects, epics and issues into one filterable tree",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Bug Tracking",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "tests": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "aioresponses>=0.7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "gltree=gitlab_tree.cli:cli",
        ],
    },
)
