import os
import gzip
import pickle
import random
import hashlib
import logging
import contextlib
from typing import Any, Union
from pathlib import Path

import requests
from urllib3 import Retry
from filelock import FileLock
from requests import HTTPError
from requests.adapters import HTTPAdapter

import strucio
from strucio import TEMP_LOCKS_DIR

LOGGER = logging.getLogger(__name__)


def requests_retry(
    retries: int = None,
    backoff: float = 1,
    status_forcelist: tuple = (413, 429, 500, 502, 503, 504),
    session: requests.Session = None,
):
    """
    Creates a requests.Session configured to retry a request in case of
    failure.
    Based on:
    https://www.peterbe.com/plog/best-practice-with-retries-with-requests

    :param retries: Number of times to retry. Default is taken from strucio
    config.
    :param backoff: Determines number of seconds to sleep between
    retry requests, using the following formula:
    backoff * (2 ^ ({number of total retries} - 1))
    :param status_forcelist: List of HTTP status codes to retry for. Note that
    404 is never retried: a missing file is reported right away.
    :param session: Existing session object.
    :return: A session object.
    """
    if retries is None:
        retries = strucio.get_config("REQUEST_RETRIES")

    session = session or requests.Session()

    # Randomize backoff a bit (20%)
    delta = random.uniform(-backoff * 0.2, backoff * 0.2)
    backoff += delta

    retry = Retry(
        total=retries,
        read=retries,
        connect=retries,
        redirect=retries,
        status_forcelist=status_forcelist,
        backoff_factor=backoff,
        # Let the caller see the final status code instead of a RetryError
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


@contextlib.contextmanager
def filelock_context(
    path: Union[str, Path],
    lockfile_basedir: Path = TEMP_LOCKS_DIR,
    cleanup: bool = False,
):
    """
    :param path: The path to lock.
    :param lockfile_basedir: Base dir in which to create the lockfile.
    :param cleanup: Whether to delete the lockfile after the context exits.
    Can cause concurrency issues.
    """
    lockfile_path_non_absolute = str(path).strip(os.sep) + ".lock"
    lockfile_path = lockfile_basedir / lockfile_path_non_absolute
    lockfile_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with FileLock(lockfile_path):
            yield
    finally:
        if cleanup:
            lockfile_path.unlink(missing_ok=True)


def remote_dl(
    url: str,
    save_path: Union[Path, str],
    uncompress=False,
    skip_existing=False,
    retries: int = None,
) -> Path:
    """
    Downloads contents of a remote file and saves it into a local file.
    :param url: The url to download from.
    :param save_path: Local file path to save to.
    :param uncompress: Whether to uncompress gzip files.
    :param skip_existing: Whether to skip download if a local file with
    the given path already exists.
    :param retries: Number of times to retry on failure. None means use
    default from config.
    :return: A Path object for the downloaded file.
    :raises requests.HTTPError: If the server responded with an error status.
    """

    with filelock_context(save_path):
        if skip_existing:
            if os.path.isfile(save_path) and os.path.getsize(save_path) > 0:
                LOGGER.debug(f"File {save_path} exists, skipping download...")
                return Path(save_path)

        req_headers = {"Accept-Encoding": "gzip, identity"}
        with requests_retry(retries=retries).get(
            url, stream=True, headers=req_headers
        ) as r:
            r.raise_for_status()
            if 300 <= r.status_code < 400:
                raise HTTPError(f"Redirect {r.status_code} for url{url}", response=r)

            if "gzip" in r.headers.get("Content-Encoding", ""):
                uncompress = True

            save_dir = Path(save_path).parent
            os.makedirs(save_dir, exist_ok=True)

            # Partial downloads must never be seen by skip_existing
            tmp_path = Path(f"{save_path}.part")
            with open(tmp_path, "wb") as out_handle:
                in_handle = gzip.GzipFile(fileobj=r.raw) if uncompress else r.raw
                try:
                    out_handle.write(in_handle.read())
                finally:
                    in_handle.close()
            os.replace(tmp_path, save_path)

            size_bytes = os.path.getsize(save_path)
            LOGGER.info(
                f"Downloaded {save_path} ({size_bytes / 1024:.1f}kB) from {url}"
            )
            return Path(save_path)


def stable_hash(obj: Any, hash_len: int = 8) -> str:
    """
    Generates a stable hash for general python objects, as a hexadecimal string. Stable
    means that the exact-same input will produce exactly the same output, even across
    machines and processes. The provided object must be pickleable.

    :param obj: A python object. Must be pickle-able.
    :param hash_len: Desired length of hash string.
    :return: A string of the requested length comprised of hexadecimal digits,
        representing a number which is the hash value.
    """
    if hash_len < 2:
        raise ValueError(f"Invalid {hash_len=}, must be > 1")

    obj_bytes: bytes = pickle.dumps(obj)
    return hashlib.blake2b(obj_bytes, digest_size=hash_len // 2).hexdigest()
