#!/usr/bin/env python3

import os.path
import setuptools
from knotweave import VERSION

here = os.path.abspath(os.path.dirname(__file__))

setuptools.setup(

    name='knotweave',
    version='.'.join(map(str,VERSION)),
    description='Parses and plays branching narrative stories written in a '
                'knot, stitch and choice markup',
    long_description=open(os.path.join(here, 'README.md'), encoding='utf-8').read(),
    long_description_content_type='text/markdown',
    license='MIT',
    classifiers=[
        'Development Status :: 4 - Beta',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Topic :: Games/Entertainment',
    ],
    keywords='interactive fiction branching narrative story choices knots stitches',
    packages=['knotweave'],
    install_requires=['begins'],
    extras_require={
        'test': ['pytest'],
    },
    python_requires='>=3.6',
    test_suite='tests',
    entry_points={
        'console_scripts': [
            'knotweave = knotweave.__main__:main.start'
        ],
    },
)
