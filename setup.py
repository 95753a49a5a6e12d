#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='django-ldapentity',
    version='1.0.0',
    description='Typed Active Directory users, groups and OUs over python-ldap',
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['django', 'ldap', 'active directory'],
    author="Caltech IMSS ADS",
    author_email="imss-ads-staff@caltech.edu",
    packages=find_packages(exclude=['bin']),
    include_package_data=True,
    install_requires=[
        'django',
        'pytz',
        'ldap_filter',
        'python-ldap',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3"
    ],
)
