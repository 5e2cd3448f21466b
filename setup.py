#!/usr/bin/env python
'''
See LICENSE for licensing information
'''

from setuptools import setup

setup(name='onionctl',
      version='0.1.0',
      description='Manage tor hidden services using the tor control port',
      packages=['onionctl'],
      python_requires='>=3.7',
      install_requires=[
        'twisted',
        'cryptography',
        'pyyaml',
      ],
      entry_points={
        'console_scripts': ['onionctl = onionctl.cli:main'],
      },
      # allow running the tests with "pip install onionctl[test]"
      extras_require={
        'test':  ['pytest']
      }
     )
