# -*- coding: utf-8 -*-
"""
upk_provider.py

File discovery and batch configuration for UnPackage: scanning an input directory
for packages, loading the AES key list, and locating the game's cooked content
folder through the Epic Games launcher manifest.
"""

import fnmatch
import json
import logging
import os
import threading
from typing import Iterable, List, Optional, Tuple

from upk_package import (
    AesKey,
    ConfigurationError,
    InvalidKeyError,
    PackageNotFoundError,
    UnPackage,
)

logger = logging.getLogger(__name__)

# --- Constants ---
DEFAULT_PACKAGE_PATTERN = "*.upk"
LAUNCHER_MANIFEST_PATH = ("Epic", "UnrealEngineLauncher", "LauncherInstalled.dat")
DEFAULT_APP_NAME = "Sugar"  # Rocket League
COOKED_CONTENT_PATH = ("TAGame", "CookedPCConsole")


class OsGameFile:
    """A package file on the local filesystem."""

    def __init__(self, path: str):
        self.path: str = path
        self.file_name: str = os.path.basename(path)
        self.extension: str = os.path.splitext(self.file_name)[1].lstrip(".")

    def __repr__(self) -> str:
        return f"<OsGameFile {self.file_name}>"

    def read(self) -> bytes:
        with open(self.path, "rb") as f_in:
            return f_in.read()


class DefaultFileProvider:
    """
    Holds the scanned package files of one input directory and the AES keys used
    to open them. Keys are registered once before the parallel work starts; every
    package gets its own snapshot of them.
    """

    def __init__(self, output_dir: str, input_dir: str, keys: Iterable[AesKey] = ()):
        self.output_dir: str = output_dir
        self.input_dir: str = input_dir
        self.files: List[OsGameFile] = []
        self._keys: List[AesKey] = list(keys)
        self._keys_lock = threading.Lock()

    def add_aes_key(self, key: AesKey) -> None:
        with self._keys_lock:
            self._keys.append(key)

    @property
    def keys(self) -> Tuple[AesKey, ...]:
        with self._keys_lock:
            return tuple(self._keys)

    def scan_files(self, pattern: str = DEFAULT_PACKAGE_PATTERN) -> int:
        """Collects the files of the input directory whose name matches `pattern`."""
        if not os.path.isdir(self.input_dir):
            raise ConfigurationError(f'Input directory not found: "{self.input_dir}"')

        try:
            names = sorted(os.listdir(self.input_dir))
        except OSError as e:
            raise ConfigurationError(f'Failed to list input directory "{self.input_dir}": {e}') from e

        pattern = pattern.lower()
        self.files = [OsGameFile(os.path.join(self.input_dir, name)) for name in names if fnmatch.fnmatchcase(name.lower(), pattern) and os.path.isfile(os.path.join(self.input_dir, name))]

        logger.info('Scanned input directory "%s", found %d packages', self.input_dir, len(self.files))
        return len(self.files)

    def find_game_file(self, name: str) -> Optional[OsGameFile]:
        name = name.lower()
        for game_file in self.files:
            if game_file.file_name.lower() == name:
                return game_file
        return None

    def load_package(self, name: str) -> UnPackage:
        game_file = self.find_game_file(name)
        if game_file is None:
            raise PackageNotFoundError(f'Package not found: "{name}"')

        package = UnPackage(game_file, self.keys)
        package.load()
        return package

    def save_package(self, name: str) -> str:
        """Decrypts and decompresses a package into the output directory. Returns the written path."""
        game_file = self.find_game_file(name)
        if game_file is None:
            raise PackageNotFoundError(f'Package not found: "{name}"')

        destination_path = os.path.join(self.output_dir, game_file.file_name)
        UnPackage(game_file, self.keys).save(destination_path)
        return destination_path


def load_aes_keys(path: str) -> List[AesKey]:
    """
    Reads one base64 encoded AES key per line. Blank lines are ignored; any malformed
    line fails the whole load.
    """
    try:
        with open(path, "r", encoding="utf-8-sig") as f_in:
            lines = f_in.readlines()
    except (IOError, OSError) as e:
        raise ConfigurationError(f'Failed to read AES key file "{path}": {e}') from e

    keys = []
    for line_number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            keys.append(AesKey.from_base64(line))
        except InvalidKeyError as e:
            raise ConfigurationError(f'Invalid AES key on line {line_number} of "{path}": {e}') from e

    return keys


def find_install_dir(program_data: Optional[str] = None, app_name: str = DEFAULT_APP_NAME) -> str:
    """Returns the cooked content folder of `app_name` as recorded by the Epic Games launcher."""
    if program_data is None:
        program_data = os.environ.get("PROGRAMDATA")
    if not program_data:
        raise ConfigurationError("PROGRAMDATA is not set; pass the input directory explicitly.")

    manifest_path = os.path.join(program_data, *LAUNCHER_MANIFEST_PATH)
    if not os.path.isfile(manifest_path):
        raise ConfigurationError(f'Could not find launcher manifest: "{manifest_path}"')

    try:
        with open(manifest_path, "r", encoding="utf-8") as f_in:
            manifest = json.load(f_in)
    except (IOError, OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ConfigurationError(f'Failed to read launcher manifest "{manifest_path}": {e}') from e

    installations = manifest.get("InstallationList", []) if isinstance(manifest, dict) else []
    for installation in installations:
        if installation.get("AppName") == app_name and installation.get("InstallLocation"):
            return os.path.join(installation["InstallLocation"], *COOKED_CONTENT_PATH)

    raise ConfigurationError(f'Could not find an installation of "{app_name}" in "{manifest_path}"')
