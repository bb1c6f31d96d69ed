import re

from setuptools import setup, find_packages

# Read the content of the README file
with open("README.md", encoding="utf-8") as f:
    long_description = f.read()
    # Remove p tags.
    pattern = re.compile(r"<p.*?>.*?</p>", re.DOTALL)
    long_description = re.sub(pattern, "", long_description)

# Read the content of the requirements.txt file
with open("requirements.txt", encoding="utf-8") as f:
    requirements = [line for line in f.read().splitlines() if line.strip() and not line.startswith("#")]


setup(
    name="evidence-graph",
    version="1.0.0",
    author="Evidence Graph Development Team",
    author_email="your.email@example.com",
    description="Evidence Graph: statement extraction, clustering and traversal gating over multi-model responses",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT License",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: Text Processing :: General",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.0", "pytest-asyncio>=0.21"],
    },
    entry_points={
        'console_scripts': [
            'evidence-graph=evidence_graph.cli:main',
        ],
    },
    keywords=[
        'multi-model synthesis',
        'stance classification',
        'paragraph clustering',
        'conditional gates',
        'conflict detection',
        'evidence pruning',
        'traversal questions',
    ],
)
