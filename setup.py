"""
Setup script for Cipherlink - Secure session protocol core.

Created by orpheus497

This library provides:
- X3DH key agreement with signed and one-time pre-keys (X25519 or X448)
- Double Ratchet sessions with bounded out-of-order handling
- ChaCha20-Poly1305 message envelopes bound to the session transcript
- Optional zero-knowledge proof attachment through a pluggable engine
- Password-sealed identity storage (Argon2id + AES-256-GCM)
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='cipherlink-session',
    version='1.0.0',
    author='orpheus497',
    description='Secure session protocol core: X3DH, Double Ratchet and proof-carrying encrypted envelopes',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.10',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'aiofiles>=23.2.1',
        'tomli>=2.0.1; python_version<"3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
)
