[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "orbfeatures"
version = "0.1.0"
description = "FAST corner detection, octree keypoint distribution and ORB descriptor matching for visual SLAM"
requires-python = ">=3.10"
keywords = ["orb", "fast", "keypoints", "descriptors", "slam", "computer-vision", "matching"]
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
    "Topic :: Scientific/Engineering :: Image Recognition",
]
dependencies = [
    "numpy",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["orbfeatures"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
