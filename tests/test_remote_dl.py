import os

import gzip
import filecmp

import pytest
import requests

import tests
import tests.utils
import strucio
from strucio.utils import remote_dl, requests_retry


class TestRemoteDL:
    @classmethod
    def setup_class(cls):
        cls.RESOURCES_PATH = tests.TEST_RESOURCES_PATH.joinpath('remote_dl')
        cls.TEMP_OUT_PATH = tests.get_tmp_path('remote_dl')
        os.makedirs(cls.RESOURCES_PATH, exist_ok=True)

        # Serve files from resources dir
        cls.httpd = tests.utils.FileServer(cls.RESOURCES_PATH)

    @classmethod
    def teardown_class(cls):
        cls.httpd.shutdown()

    @pytest.fixture(autouse=True)
    def setup_fixture(self):
        self.httpd.reset_last()

    def test_dl_basic(self):
        filename = 'file1.txt'
        url = self.httpd.file_url(filename)
        orig_path = self.RESOURCES_PATH.joinpath(filename)
        save_path = self.TEMP_OUT_PATH.joinpath('foo1.txt')
        path = remote_dl(url, save_path)

        assert path == save_path
        assert filecmp.cmp(orig_path, save_path)
        assert self.httpd.last_http_path() == f'/{filename}'

    def test_dl_skip_existing(self):
        filename = 'file1.txt'
        url = self.httpd.file_url(filename)
        save_path = self.TEMP_OUT_PATH.joinpath('foo2.txt')

        remote_dl(url, save_path, skip_existing=True)
        assert self.httpd.last_http_path() == f'/{filename}'

        self.httpd.reset_last()
        remote_dl(url, save_path, skip_existing=True)
        assert self.httpd.last_http_path() is None

    def test_dl_no_skip_existing(self):
        filename = 'file1.txt'
        url = self.httpd.file_url(filename)
        save_path = self.TEMP_OUT_PATH.joinpath('foo3.txt')

        remote_dl(url, save_path, skip_existing=False)
        assert self.httpd.last_http_path() == f'/{filename}'

        self.httpd.reset_last()
        remote_dl(url, save_path, skip_existing=False)
        assert self.httpd.last_http_path() == f'/{filename}'

    def test_dl_uncompress(self):
        filename = 'file2.txt.gz'
        url = self.httpd.file_url(filename)
        save_path = self.TEMP_OUT_PATH.joinpath('foo4.txt')

        out_path = remote_dl(url, save_path, uncompress=True)
        assert self.httpd.last_http_path() == f'/{filename}'
        assert out_path == save_path

        with gzip.GzipFile(self.RESOURCES_PATH.joinpath(filename)) as gz_handle:
            expected = gz_handle.read()
        with open(save_path, 'rb') as out_handle:
            assert out_handle.read() == expected

    def test_dl_missing_file(self):
        url = self.httpd.file_url('no_such_file.txt')
        save_path = self.TEMP_OUT_PATH.joinpath('foo5.txt')

        with pytest.raises(requests.HTTPError) as e:
            remote_dl(url, save_path, retries=0)

        assert e.value.response.status_code == 404
        assert not os.path.exists(save_path)
        assert not os.path.exists(f'{save_path}.part')


class TestRequestsRetry:
    @pytest.mark.parametrize('retries', [0, 2, 5])
    def test_retries(self, retries):
        session = requests_retry(retries=retries)
        for url in ('http://example.com', 'https://example.com'):
            retry = session.get_adapter(url).max_retries
            assert retry.total == retries
            assert 404 not in retry.status_forcelist

    def test_retries_from_config(self):
        session = requests_retry()
        retry = session.get_adapter('https://example.com').max_retries
        assert retry.total == strucio.get_config('REQUEST_RETRIES')
