#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""A setuptools based setup module.
See:
https://packaging.python.org/en/latest/distributing.html
https://github.com/pypa/sampleproject
"""


# Always prefer setuptools over distutils
from setuptools import setup
# To use a consistent encoding
from codecs import open
from os import path

__version__ = "1.2.0"

description = "A Python package and CLI for turning inbound DMARC " \
              "aggregate report emails into normalized records"

here = path.abspath(path.dirname(__file__))

# Get the long description from the README file
with open(path.join(here, 'README.rst'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='dmarcmail',

    version=__version__,

    description=description,
    long_description=long_description,

    license='Apache 2.0',

    # See https://pypi.python.org/pypi?%3Aaction=list_classifiers
    classifiers=[
        'Development Status :: 4 - Beta',

        'Intended Audience :: Developers',
        "Intended Audience :: Information Technology",
        'Operating System :: OS Independent',

        'License :: OSI Approved :: Apache Software License',

        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],

    keywords='DMARC, reporting, email, parser',

    packages=["dmarcmail", "dmarcmail.mail"],

    python_requires='>=3.8',

    install_requires=['xmltodict>=0.12.0',
                      'mail-parser>=3.15.0',
                      'requests>=2.22.0',
                      'python-dateutil>=2.8.0',
                      'tqdm>=4.31.1',
                      ],

    extras_require={
        'test': ['lxml>=4.4.0'],
    },

    entry_points={
        'console_scripts': ['dmarcmail=dmarcmail.cli:_main'],
    }
)
