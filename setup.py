"""
setup.py for crowdlens.

Needed because the source tree does not follow the standard layout:
  - crowdlens lives under backend/src/crowdlens/

pyproject.toml handles metadata; this file maps package dirs.
"""

from setuptools import setup

setup(
    package_dir={
        "crowdlens": "backend/src/crowdlens",
    },
    packages=[
        "crowdlens",
        "crowdlens.cli",
        "crowdlens.search",
        "crowdlens.storage",
        "crowdlens.vision",
    ],
)
