from setuptools import setup, find_packages

setup(
    name='offlinectl',
    version='0.1.0',
    packages=find_packages(exclude=['*.tests']),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'pyyaml',
        'pydantic>=2',
        'python-dotenv',
        'paramiko',
        'kubernetes',
        'ansible-runner',
        'requests'
    ],
    extras_require={
        'test': [
            'pytest',
            'jsonschema'
        ]
    },
    entry_points={
        'console_scripts': [
            'offlinectl=offlinectl.cli:app'
        ]
    },
    author='Your Name',
    description='Prepare and install offline Kubespray bundles across air-gapped fleets',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.8',
)
