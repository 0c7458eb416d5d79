"""A setuptools based setup module.
"""
from setuptools import setup

# project metadata lives in pyproject.toml
setup(
    # this can't be set in pyproject.toml:
    # (see https://github.com/pypa/wheel/issues/582#issuecomment-1807234132)
    options={
        "bdist_wheel": {"py_limited_api": "cp38"},
    },
)
