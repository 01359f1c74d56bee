from setuptools import setup, find_packages

setup(
    name="phylocourse",
    version="0.1.0",
    description="Course page builder and narrated walkthroughs for phylogenetic comparative methods",
    package_dir={"": "phylocourse"},
    packages=find_packages("phylocourse"),
    package_data={"phylocourse": ["templates/*.html"]},
    install_requires=[
        "numpy>=1.24",
        "scipy>=1.10",
        "pandas>=2.0",
        "treeswift>=1.1",
        "matplotlib>=3.7",
        "PyYAML>=6.0",
        "Jinja2>=3.1",
    ],
    extras_require={
        "simulation": ["dendropy>=4.6"],
        "dev": ["pytest>=7.4", "dendropy>=4.6"],
    },
    entry_points={
        "console_scripts": [
            "phylocourse=phylocourse.cli:main",
        ],
    },
)
