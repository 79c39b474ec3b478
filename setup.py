from setuptools import find_packages, setup

setup(
    name='chain-forge',
    version='0.1.0',
    description='Local Bitcoin regtest and Solana test validator instances with funded accounts.',
    packages=find_packages(exclude=['tests', 'tests.*']),
    python_requires='>=3.8',

    entry_points={
        'console_scripts': [
            'chain-forge=chain_forge.__main__:main',
        ],
    },
    install_requires=[
        'click',
        'flask',
        'flask-marshmallow',
        'gevent',
        'marshmallow',
        'mirakuru',
        'pluggy',
        'prometheus_client',
        'pyyaml',
        'requests',
        'structlog',
        'waitress',
    ],
    extras_require={
        'test': [
            'pytest',
            'responses',
        ],
    },
)
