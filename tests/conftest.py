"""py.test hooks.

Add the --url command line option, and skip all tests marked the with
'integration' marker unless the option is included
"""
from os import path
import codecs


import pytest

THISDIR = path.dirname(path.abspath(__file__))


def pytest_addoption(parser):
    """Add the --url commandline option"""
    parser.addoption(
        "--url",
        type=str,
        default=None,
        action="store",
        dest="URL",
        help="the device description URL of the renderer to be used for the "
        "integration tests",
    )


def pytest_runtest_setup(item):
    """Skip tests marked 'integration' unless a renderer url is given."""
    if "integration" in item.keywords and not item.config.getoption("--url"):
        pytest.skip("use --url and a renderer url to run integration tests.")


class DataLoader:
    """A class that loads test data"""

    def __init__(self, data_sub_dir):
        self.data_dir = path.join(THISDIR, "data", data_sub_dir)

    def load_xml(self, filename):
        """Return XML string loaded from filename under ``self.data_sub_dir``"""
        xml_string = ""
        with codecs.open(path.join(self.data_dir, filename), encoding="utf-8") as file_:
            for line in file_:
                # Allow for indenting the XML source
                xml_string += line.lstrip(" ")
        return xml_string
