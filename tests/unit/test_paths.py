#!/usr/bin/env python3
"""
Unit tests for core/paths.py naming conventions.

Tests:
1. Backing file numbers are max+1, never reusing gaps
2. Names that do not match '<n>.<suffix>' are ignored
3. Mapped names and mount points follow the loop device number
4. mapper_number rejects names without a leading number
"""

import pytest

from encrypted_files.core.errors import ParseError
from encrypted_files.core.paths import Paths


class TestNextBackingNumber:
    def test_empty_directory_gives_one(self):
        assert Paths.next_backing_number([], "encrypted") == 1

    def test_gaps_are_not_reused(self):
        names = ["1.encrypted", "2.encrypted", "4.encrypted"]
        assert Paths.next_backing_number(names, "encrypted") == 5

    def test_ignores_other_names(self):
        names = ["1.encrypted", "notes.txt", "7.img", "x.encrypted", "3.encrypted.bak", ".encrypted"]
        assert Paths.next_backing_number(names, "encrypted") == 2

    def test_respects_suffix(self):
        names = ["9.encrypted", "2.vault"]
        assert Paths.next_backing_number(names, "vault") == 3

    def test_next_backing_file_in_directory(self, tmp_path):
        (tmp_path / "1.encrypted").touch()
        (tmp_path / "3.encrypted").touch()
        assert Paths.next_backing_file(tmp_path, "encrypted") == tmp_path / "4.encrypted"

    def test_next_backing_file_missing_directory(self, tmp_path):
        assert Paths.next_backing_file(tmp_path / "nope", "encrypted") == tmp_path / "nope" / "1.encrypted"


class TestBackingFileNumber:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("1.encrypted", 1),
            ("42.encrypted", 42),
            ("42.unencrypted", None),
            ("a1.encrypted", None),
            ("1", None),
        ],
    )
    def test_parse(self, name, expected):
        assert Paths.backing_file_number(name, "encrypted") == expected


class TestMappedNames:
    def test_mapper_name(self):
        assert Paths.mapper_name(3, "unencrypted") == "3.unencrypted"

    def test_mapper_path(self):
        assert str(Paths.mapper_path("3.unencrypted")) == "/dev/mapper/3.unencrypted"

    def test_mount_point(self):
        assert str(Paths.mount_point("/mnt", 12)) == "/mnt/12"

    def test_mapper_number(self):
        assert Paths.mapper_number("12.unencrypted") == 12

    @pytest.mark.parametrize("name", ["unencrypted", "luks-root", ".unencrypted", "12"])
    def test_mapper_number_rejects(self, name):
        with pytest.raises(ParseError):
            Paths.mapper_number(name)
