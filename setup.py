import logging
import os
import re

import setuptools

logger = logging.getLogger(__name__)

ROOT_DIR = os.path.dirname(__file__)


def find_version(*paths):
    version_file_path = os.path.join(ROOT_DIR, *paths)
    with open(version_file_path) as file_stream:
        version_match = re.search(
            r"^__version__ = ['\"]([^'\"]*)['\"]", file_stream.read(), re.M
        )
        if version_match:
            return version_match.group(1)
        raise RuntimeError(f"Failed to find version at: {version_file_path}")


with open(os.path.join(ROOT_DIR, "README.md"), "r", encoding="utf-8") as fh:
    long_description = fh.read()


setuptools.setup(
    name="ledgercat",
    version=find_version("ledgercat", "__init__.py"),
    author="Ray Team",
    description="Snapshot-isolated table metadata with manifest compaction on Ray.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(where=".", include=["ledgercat*"]),
    extras_require={
        "test": ["pytest >= 7.0"],
    },
    install_requires=[
        "msgpack >= 1.0.0",
        "pyarrow >= 14.0.0",
        "ray >= 2.20.0",
        "tenacity >= 8.2.3",
    ],
    setup_requires=["wheel"],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.9",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
)
