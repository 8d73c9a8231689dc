#!/usr/bin/env python3
"""
Speech Alignment Training Framework - Setup Configuration
"""

from setuptools import setup, find_packages

LONG_DESCRIPTION = """\
Trains convolutional acoustic models against sequence criteria that share
one learned transition matrix (ASG, CTC, full-connect, linear segmentation,
forced alignment), through a linseg -> falseg -> main curriculum, on one
or many data-parallel workers.
"""

# Runtime dependencies
requirements = [
    "torch>=1.12.0",
    "numpy>=1.21.0",
    "pyyaml>=6.0",
    "tqdm>=4.64.0",
    "edit_distance>=1.0.4",
]

optional_requirements = {
    "tensorboard": ["tensorboard>=2.10.0"],
    "full": [
        "tensorboard>=2.10.0",
    ],
    "test": [
        "pytest>=7.0.0",
    ],
    "dev": [
        "pytest>=7.0.0",
        "pytest-cov>=3.0.0",
        "black>=22.0.0",
        "isort>=5.10.0",
        "mypy>=0.960",
    ],
}

setup(
    name="speech-alignment-training-framework",
    version="1.0.0",
    author="Speech Alignment Training Framework Team",
    author_email="",
    description="Acoustic model training with shared-transition alignment criteria",
    long_description=LONG_DESCRIPTION,
    keywords="speech recognition acoustic model asg ctc alignment pytorch",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: Multimedia :: Sound/Audio :: Speech",
    ],
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require=optional_requirements,
    entry_points={
        "console_scripts": [
            "satf-train=cli.run:main",
        ],
    },
    zip_safe=False,
)
