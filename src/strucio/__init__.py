import os
import tempfile
import logging.config
from typing import Any
from pathlib import Path

PROJECT_DIR = Path(Path(__file__).resolve().parents[2])

# If we're in an installed package, use pwd
if "site-packages" in str(PROJECT_DIR):
    PROJECT_DIR = Path(os.getcwd())

PACKAGE_DIR = Path(__file__).resolve().parent

"""
Env vars used to configure the application
"""
ENV_STRUCIO_DATA_DIR = "DATA_DIR"
ENV_STRUCIO_PDB_DIR = "PDB_DIR"
ENV_STRUCIO_URL_DIR = "URL_DIR"

"""
Dict for storing top-level package configuration options, and their default
values.
"""
CONFIG_REQUEST_RETRIES = "REQUEST_RETRIES"
CONFIG_DEFAULT_FILE_FORMAT = "DEFAULT_FILE_FORMAT"
CONFIG_ASSEMBLY_CHAIN_SEP = "ASSEMBLY_CHAIN_SEP"
CONFIG_LOG_DEBUG = "LOG_DEBUG"
_CONFIG = {
    # Number of retries to use when fetching structure files
    CONFIG_REQUEST_RETRIES: 3,
    # File format to download when resolving a PDB code ("cif" or "pdb")
    CONFIG_DEFAULT_FILE_FORMAT: "cif",
    # Separator between the original chain id and the operator id of
    # chains created when building biological assemblies
    CONFIG_ASSEMBLY_CHAIN_SEP: "_",
    # Whether to log at DEBUG level
    CONFIG_LOG_DEBUG: False,
}

"""
Specify directory paths used for input and output.
All these directories can be overridden by environment variables with matching
names.
"""

# Top-level directory for raw data and downloading files
BASE_DATA_DIR = Path(os.getenv(ENV_STRUCIO_DATA_DIR, PROJECT_DIR.joinpath("data")))
BASE_DOWNLOAD_DIR = BASE_DATA_DIR

os.makedirs(BASE_DATA_DIR, exist_ok=True)


def _get_subdir(basedir: Path, subdir: str) -> Path:
    path = basedir.joinpath(subdir)
    os.makedirs(str(path), exist_ok=True)
    return path


def data_subdir(name):
    """
    :return: An existing sub-directory of the data dir.
    """
    return _get_subdir(BASE_DATA_DIR, name)


def get_config(key: str):
    """
    :param key: A configuration parameter's name
    :return: The value of that parameter.
    """
    return _CONFIG[key]


def get_all_config() -> dict:
    """
    :return: The configuration dict.
    """
    return _CONFIG.copy()


def set_config(key: str, value: Any):
    """
    :param key: A configuration parameter's name.
    :param value: The value to set.
    """
    if key not in _CONFIG:
        raise KeyError(key)
    _CONFIG[key] = value


# Directory for PDB/mmCIF files downloaded by PDB code
PDB_DIR = Path(os.getenv(ENV_STRUCIO_PDB_DIR, data_subdir("pdb")))

# Directory for structure files downloaded from arbitrary URLs
URL_DIR = Path(os.getenv(ENV_STRUCIO_URL_DIR, data_subdir("url")))

# Temp files
BASE_TEMP_DIR = Path(tempfile.gettempdir()).joinpath("strucio_data")
TEMP_LOCKS_DIR = BASE_TEMP_DIR.joinpath("locks")


def get_resource_path(data_dir: Path, basename: str):
    """
    Returns the path where a file resource either is or should be downloaded to.
    This exists to handle the case of multiple processes, where each process
    must download files to a separate directory, but we want them to share a
    common data directory where the resources might already exist.

    :param data_dir: Directory where the file should be, for example PDB_DIR.
    should be a subdir of BASE_DATA_DIR.
    :param basename: Filename of the resource, for example '1abc.cif'.
    :return: Either the path of the resource in the data_dir if it exists,
    or the path it should be downloaded to if it doesn't.
    """
    data_dir_filepath = Path(data_dir).joinpath(basename)
    if data_dir_filepath.is_file():
        return data_dir_filepath

    if BASE_DOWNLOAD_DIR == BASE_DATA_DIR:
        return data_dir_filepath

    # Otherwise, we need to download into the download directory using the
    # same relative subdirectory structure as in the data directory.
    rel_dir = Path(data_dir).relative_to(BASE_DATA_DIR)
    return BASE_DOWNLOAD_DIR.joinpath(rel_dir, basename)


# load logger config
logging.config.fileConfig(
    PACKAGE_DIR.joinpath("logging.ini"), disable_existing_loggers=False
)

from strucio.cache import (  # noqa: E402
    StructureCache,
    default_cache,
    get_structure,
    get_biological_assembly,
)
from strucio.identifier import parse_identifier, try_parse_identifier  # noqa: E402

__version__ = "0.1.0"
