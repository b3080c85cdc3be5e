#!/usr/bin/env python

from setuptools import setup

# Retain for compatibility with legacy builds or build tool versions.
# The package metadata is in setup.cfg.
setup()
