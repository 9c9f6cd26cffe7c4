import re

from setuptools import setup


def get_property(prop):
    result = re.search(
        rf'{prop}\s*=\s*[\'"]([^\'"]*)[\'"]',
        open("matrixbuild/__init__.py").read(),
    )
    return result.group(1)


with open("README.md", encoding="utf-8") as infile:
    long_description = infile.read()


setup(
    name="matrixbuild",
    version=get_property("__version__"),
    description="A job matrix runner with bounded parallelism and artifact collection",
    keywords=["ci", "build", "matrix", "artifacts"],
    long_description_content_type="text/markdown",
    long_description=long_description,
    python_requires=">=3.9",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Intended Audience :: Developers",
    ],
    packages=["matrixbuild"],
    include_package_data=True,
    entry_points={
        "console_scripts": [
            "matrixbuild=matrixbuild.cli:main",
        ]
    },
    install_requires=[
        "numpy",
        "pandas",
        "graphviz",
        "matplotlib",
        "psutil",
        "rich",
        "argcomplete",
    ],
    extras_require={
        "test": ["pytest", "pytest-mock"],
    },
)
