from setuptools import setup, find_packages

setup(
    name = "stitch",
    version = "0.1",
    description = "Array computation on zero-copy views, compiled to small expression kernels",
    package_dir = {"": "python"},       # sources live under python/
    packages = find_packages("python"),
    python_requires = ">=3.8",
    install_requires = [
        "numpy",
        "torch",                        # device backend
    ],
    extras_require = {
        "test": ["pytest", "hypothesis"],
    },
)
