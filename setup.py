from setuptools import setup, find_packages

setup(
    name='winnodectl',
    version='0.1.0',
    packages=find_packages(exclude=['winnodectl.tests']),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'rich',
        'fastapi',
        'uvicorn',
        'kubernetes',
        'paramiko',
        'pydantic',
        'pyyaml',
        'python-dotenv',
        'requests',
        'urllib3',
    ],
    extras_require={
        'test': [
            'pytest',
            'jsonschema',
            'httpx',
        ],
    },
    entry_points={
        'console_scripts': [
            'winnodectl=winnodectl.cli:app'
        ]
    },
    author='Your Name',
    description='Operator and CLI that turn Windows cloud instances into Kubernetes worker nodes',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
