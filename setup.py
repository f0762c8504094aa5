from setuptools import setup, find_packages

setup(
    name='rebound-relay-billing',
    version='0.1.0',
    description='Payment webhook reconciliation for Rebound & Relay',
    packages=find_packages(include=['rebound_relay', 'rebound_relay.*']),
    python_requires='>=3.10',
    install_requires=[
        'fastapi',
        'uvicorn',
        'sqlalchemy>=2.0',
        'psycopg[binary]',
        'pydantic>=2',
        'python-dotenv',
        'requests',
        'sentry-sdk',
        'stripe>=10',
        'standardwebhooks',
    ],
    extras_require={
        'dev': [
            'pytest<9',
            'pytest-asyncio',
            'httpx',
        ],
    },
)
