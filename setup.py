from setuptools import setup, find_packages

setup(
    name='zerotouch',
    version='0.1.0',
    packages=find_packages(exclude=['zerotouch.tests']),
    include_package_data=True,
    install_requires=[
        'typer',
        'kubernetes',
        'pydantic>=2',
        'python-dotenv',
        'PyYAML',
        'requests',
        'urllib3',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'zerotouch=zerotouch.cli:app'
        ]
    },
    description='First-boot orchestrator that turns a fresh machine into a running Kubernetes node',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.10',
)
