"""
Setup script for GhostTerm - Ephemeral peer-to-peer terminal chat.

Created by orpheus497

This messenger provides:
- Serverless host/join sessions bootstrapped from a pasteable ticket
- Encrypted direct tunnels (X25519 + ChaCha20-Poly1305)
- Live presence with heartbeats and liveness timeouts
- Terminal UI built on Textual
- Memory-only conversations: nothing is ever written to disk
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='ghostterm',
    version='0.3.0',
    author='orpheus497',
    description='Ephemeral, serverless peer-to-peer chat for the terminal',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Programming Language :: Python :: 3.13',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.11',
    install_requires=[
        'textual>=0.47.0',
        'cryptography>=42.0.4',
        'rich>=13.7.0',
        'pyperclip>=1.8.2',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'ghostterm=ghostterm.__main__:main',
        ],
    },
)
