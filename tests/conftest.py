import pytest

from package_builder import MemoryFile, aes_encrypt, build_package


@pytest.fixture
def package_bytes():
    return build_package


@pytest.fixture
def memory_file():
    return MemoryFile


@pytest.fixture
def encrypt():
    return aes_encrypt
