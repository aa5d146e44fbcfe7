[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lineslam"
version = "0.1.0"
description = "Map points and lines, ORB feature extraction, two-view triangulation and local mapping for visual SLAM"
requires-python = ">=3.10"
keywords = ["slam", "orb", "computer-vision", "triangulation", "plucker", "mapping", "fast", "brief"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Processing",
]
dependencies = [
    "numpy",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["lineslam"]

[tool.pytest.ini_options]
addopts = "-ra"
