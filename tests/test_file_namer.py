import re
from datetime import datetime

import pytest

from app.services.file_namer import FileNamer, file_extension

FIXED_TIME = datetime(2024, 3, 5, 14, 7, 9)


def test_generated_name_format():
    namer = FileNamer(8)
    name = namer.generate("holiday.png", now=FIXED_TIME)
    assert re.fullmatch(r"2024_Mar_05-14_07_09_[A-Za-z0-9]{8}\.png", name)


def test_clock_is_used_when_no_time_given():
    namer = FileNamer(4, clock=lambda: FIXED_TIME)
    assert namer.generate("clip.mp4").startswith("2024_Mar_05-14_07_09_")


def test_extension_is_lowercased():
    namer = FileNamer(6)
    assert namer.generate("Photo.PNG", now=FIXED_TIME).endswith(".png")


def test_missing_extension():
    namer = FileNamer(6)
    name = namer.generate("README", now=FIXED_TIME)
    assert re.fullmatch(r"2024_Mar_05-14_07_09_[A-Za-z0-9]{6}", name)


@pytest.mark.parametrize("filename,expected", [
    ("a.png", ".png"),
    ("archive.tar.GZ", ".gz"),
    ("noext", ""),
    (".bashrc", ""),
    ("weird.p/ng", ""),
    ("trailing.", ""),
    ("", ""),
])
def test_file_extension(filename, expected):
    assert file_extension(filename) == expected


def test_random_suffixes_differ():
    namer = FileNamer(16)
    names = {namer.generate("x.png", now=FIXED_TIME) for _ in range(50)}
    assert len(names) == 50


def test_rejects_non_positive_length():
    with pytest.raises(ValueError):
        FileNamer(0)
