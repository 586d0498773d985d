#!/usr/bin/env python3

# python setup.py sdist --format=zip,gztar

import sys
import importlib.util

from setuptools import setup

MIN_PYTHON_VERSION = "3.10.0"
_min_python_version_tuple = tuple(map(int, (MIN_PYTHON_VERSION.split("."))))


if sys.version_info[:3] < _min_python_version_tuple:
    sys.exit("Error: lnd-nwc requires Python version >= %s..." % MIN_PYTHON_VERSION)

with open('contrib/requirements/requirements.txt') as f:
    requirements = f.read().splitlines()

# load version.py; needlessly complicated alternative to "imp.load_source":
version_spec = importlib.util.spec_from_file_location('version', 'lnd_nwc/version.py')
version_module = version = importlib.util.module_from_spec(version_spec)
version_spec.loader.exec_module(version_module)

extras_require = {
    'tests': ['pytest'],
}


setup(
    name="lnd-nwc",
    version=version.LND_NWC_VERSION,
    python_requires='>={}'.format(MIN_PYTHON_VERSION),
    install_requires=requirements,
    extras_require=extras_require,
    packages=['lnd_nwc'],
    package_dir={
        'lnd_nwc': 'lnd_nwc'
    },
    scripts=['run_lnd_nwc'],
    description="Nostr Wallet Connect service for LND",
    license="MIT Licence",
    long_description="""Serves NIP-47 wallet requests from Nostr relays with an LND node""",
)
