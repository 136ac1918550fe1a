from setuptools import setup, find_packages

setup(
    name="fleet-trip-analyzer",
    version="0.1.0",
    packages=find_packages(include=['fleet_trip_analyzer', 'fleet_trip_analyzer.*']),
    install_requires=[
        line.strip()
        for line in open('requirements.txt').readlines()
        if line.strip() and not line.startswith('#')
    ],
    extras_require={
        'test': ['pytest>=7.0'],
    },
    entry_points={
        'console_scripts': [
            'fleet-trip-analyzer=fleet_trip_analyzer.main:main',
        ],
    },
    python_requires='>=3.8',
)
