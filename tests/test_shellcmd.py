import sys
import tarfile
import pytest
from pathlib import Path
from unittest.mock import Mock, patch
from xmlports import (
    ShellCmd, CommandError, ConfigureError, DownloadError,
    ExtractionError, logging,
)

@pytest.fixture
def shell():
    shell = ShellCmd()
    shell.log = Mock(spec=logging.Logger)
    return shell

def test_get_accepts_list(shell):
    with patch('subprocess.check_output') as mock_output:
        mock_output.return_value = "-I/opt/include\n"
        assert shell.get(['sh', 'xml2-config', '--cflags']) == "-I/opt/include"
        mock_output.assert_called_once_with(
            ['sh', 'xml2-config', '--cflags'], encoding='utf8', cwd='.')

def test_execute_writes_step_log(shell, tmp_path):
    log_path = shell.execute(
        "compile", [sys.executable, "-c", "print('hello from make')"],
        cwd=tmp_path, log_dir=tmp_path / "logs")
    assert log_path == tmp_path / "logs" / "compile.log"
    assert "hello from make" in log_path.read_text()

def test_execute_failure_raises_typed_error(shell, tmp_path):
    with pytest.raises(ConfigureError) as excinfo:
        shell.execute(
            "configure", [sys.executable, "-c", "import sys; sys.exit(3)"],
            cwd=tmp_path, log_dir=tmp_path, error=ConfigureError)
    assert excinfo.value.log == tmp_path / "configure.log"
    assert "exit status 3" in str(excinfo.value)
    shell.log.critical.assert_called_once()

def test_execute_missing_program(shell, tmp_path):
    with pytest.raises(CommandError) as excinfo:
        shell.execute("install", ["xmlports-no-such-program"], cwd=tmp_path,
                      log_dir=tmp_path)
    assert excinfo.value.log == tmp_path / "install.log"

def test_download_with_folder(shell, tmp_path):
    test_url = "http://test.com/file.tar.gz"
    with patch('xmlports.urlretrieve') as mock_retrieve:
        result = shell.download(test_url, tofolder=tmp_path)
        assert isinstance(result, Path)
        assert result == tmp_path / 'file.tar.gz'
        mock_retrieve.assert_called_once_with(test_url, filename=tmp_path / 'file.tar.gz')

def test_download_failure(shell, tmp_path):
    with patch('xmlports.urlretrieve') as mock_retrieve:
        mock_retrieve.side_effect = OSError("connection refused")
        with pytest.raises(DownloadError):
            shell.download("http://test.com/file.tar.gz", tofolder=tmp_path)
    assert not (tmp_path / 'file.tar.gz').exists()

def test_digest(shell, tmp_path):
    path = tmp_path / "data.bin"
    path.write_bytes(b"abc")
    assert shell.digest(path) == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad")

def test_extract_tar(shell):
    with patch('tarfile.is_tarfile') as mock_is_tar:
        with patch('tarfile.open') as mock_open:
            mock_is_tar.return_value = True
            mock_tar = Mock()
            mock_open.return_value.__enter__.return_value = mock_tar

            shell.extract('test.tar.gz', 'extract_dir')

            mock_tar.extractall.assert_called_once_with('extract_dir', filter='data')

def test_extract_real_tar(shell, tmp_path):
    src = tmp_path / "foo-1.0"
    src.mkdir()
    (src / "configure").write_text("#!/bin/sh\n")
    archive = tmp_path / "foo-1.0.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(src, arcname="foo-1.0")
    out = tmp_path / "out"
    out.mkdir()
    shell.extract(archive, out)
    assert (out / "foo-1.0" / "configure").exists()

def test_extract_invalid(shell):
    with patch('tarfile.is_tarfile') as mock_is_tar:
        with patch('zipfile.is_zipfile') as mock_is_zip:
            mock_is_tar.return_value = False
            mock_is_zip.return_value = False
            with pytest.raises(ExtractionError):
                shell.extract('test.invalid', 'extract_dir')

def test_remove_folder_and_missing_file(shell, tmp_path):
    folder = tmp_path / "ports"
    (folder / "archives").mkdir(parents=True)
    shell.remove(folder)
    assert not folder.exists()
    shell.remove(tmp_path / "missing.txt")

def test_custom_formatter_plain():
    from xmlports import CustomFormatter
    record = logging.LogRecord("Recipe", logging.INFO, __file__, 1,
                               "building %s", ("zlib",), None, func="cook")
    text = CustomFormatter(use_color=False).format(record)
    assert text.endswith(" - INFO - Recipe.cook - building zlib")
