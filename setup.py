from setuptools import setup, find_packages

setup(
    name="chunkbackup",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
    install_requires=[
        'watchdog>=2.1',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'chunkbackup=chunkbackup.cli:main',
        ],
    },
)
