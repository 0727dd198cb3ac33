"""
A setuptools based setup module.

See:
https://packaging.python.org/guides/distributing-packages-using-setuptools/
"""

import setuptools

INSTALL_REQUIRES = [
    "attrs >=22.2.0",
    "frozendict",
    "jsonschema",
    "PyYAML",
    "sympy >=1.10",
    "tqdm",
]


def long_description():
    """Parse long description from readme."""
    with open("README.md") as readme_file:
        return readme_file.read()


setuptools.setup(
    name="ampred",
    version="0.1.0",
    author="The ComPWA team",
    long_description=long_description(),
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=setuptools.find_packages("src"),
    package_data={"ampred.io": ["rule-store.json"]},
    include_package_data=True,
    license="GPLv3 or later",
    python_requires=">=3.9",
    install_requires=INSTALL_REQUIRES,
    extras_require={"test": ["pytest"]},
)
