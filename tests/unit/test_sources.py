"""
Unit tests for command transports (tierkeep/backup/sources.py).

Tests LocalTransport against the real shell, SSHTransport with a mocked
paramiko client, and the capture command builder.
"""

import io
import tarfile
from unittest.mock import MagicMock

import paramiko
import pytest

from tierkeep.backup.errors import TransportError
from tierkeep.backup.sources import (
    CommandResult,
    LocalTransport,
    SSHTransport,
    build_tar_command,
    create_transport,
    is_benign_capture_warning,
    run_commands,
)


class TestTarCommand:
    """Test the capture pipeline builder."""

    def test_plain(self):
        command = build_tar_command('/srv/www/site')

        assert command.startswith('tar -czf -')
        assert "--exclude='*.tgz'" in command
        assert command.endswith('/srv/www/site')

    def test_quotes_paths(self):
        command = build_tar_command('/srv/my site')
        assert "'/srv/my site'" in command

    def test_parent_dir_fallback(self):
        command = build_tar_command('/old/home/site', '/srv/www')

        assert 'if [ -d /old/home/site ]' in command
        assert 'elif [ -d /srv/www/site ]' in command
        assert 'exit 2' in command


class TestBenignWarning:

    def test_file_changed(self):
        assert is_benign_capture_warning(1, 'tar: ./log: file changed as we read it\n')

    def test_other_exit_codes(self):
        assert not is_benign_capture_warning(2, 'file changed as we read it')
        assert not is_benign_capture_warning(1, 'Cannot open: Permission denied')
        assert not is_benign_capture_warning(1, None)


class TestLocalTransport:
    """Test LocalTransport with real commands."""

    def test_execute(self):
        result = LocalTransport().execute('echo hello; echo oops >&2; exit 3')

        assert result.stdout.endswith('hello\n')
        assert 'oops' in result.stderr
        assert result.exit_status == 3

    def test_run_raises_on_failure(self):
        with pytest.raises(TransportError) as excinfo:
            LocalTransport().run('echo broken >&2; exit 4')

        assert excinfo.value.exit_status == 4
        assert 'broken' in excinfo.value.stderr

    def test_timeout(self):
        with pytest.raises(TransportError, match='timed out'):
            LocalTransport(timeout=0.2).execute('sleep 5')

    def test_open_stream_archives_directory(self, tmp_path):
        site = tmp_path / 'site'
        site.mkdir()
        (site / 'index.html').write_text('<h1>hi</h1>')
        (site / 'old.tgz').write_bytes(b'previous archive')

        capture = LocalTransport().open_stream(build_tar_command(str(site)))
        data = capture.stdout.read()
        exit_status, stderr = capture.wait()

        assert exit_status == 0
        with tarfile.open(fileobj=io.BytesIO(data), mode='r:gz') as tar:
            names = tar.getnames()
        assert any(name.endswith('index.html') for name in names)
        assert not any(name.endswith('old.tgz') for name in names)

    def test_open_stream_failure_status(self, tmp_path):
        capture = LocalTransport().open_stream(build_tar_command(str(tmp_path / 'missing')))
        capture.stdout.read()
        exit_status, stderr = capture.wait()

        assert exit_status != 0
        assert stderr

    def test_kill(self):
        capture = LocalTransport().open_stream('sleep 30')
        capture.kill()
        exit_status, _ = capture.wait()
        assert exit_status != 0


class TestSSHTransport:
    """Test SSHTransport with mocked paramiko."""

    def _channel_files(self, out=b'', err=b'', status=0):
        stdout = MagicMock()
        stdout.read.return_value = out
        stdout.channel.recv_exit_status.return_value = status
        stderr = MagicMock()
        stderr.read.return_value = err
        stderr.readline.return_value = ''
        return MagicMock(), stdout, stderr

    def test_execute(self, mock_ssh_client):
        client = mock_ssh_client.return_value
        client.exec_command.return_value = self._channel_files(b'42\n', b'', 0)

        transport = SSHTransport(host='web1', username='deploy', password='pw')
        result = transport.execute('du -sb /var/www')

        assert result.stdout == '42\n'
        assert result.exit_status == 0
        client.connect.assert_called_once()
        assert client.connect.call_args.kwargs['password'] == 'pw'
        assert client.exec_command.call_args.args[0] == "bash -lc 'du -sb /var/www'"

    def test_connects_once(self, mock_ssh_client):
        client = mock_ssh_client.return_value
        client.exec_command.side_effect = lambda command: self._channel_files(b'ok')

        transport = SSHTransport(host='web1', username='deploy')
        transport.execute('true')
        transport.execute('true')

        assert client.connect.call_count == 1

    def test_run_raises_on_failure(self, mock_ssh_client):
        mock_ssh_client.return_value.exec_command.return_value = self._channel_files(b'', b'denied', 1)

        with pytest.raises(TransportError) as excinfo:
            SSHTransport(host='web1', username='deploy').run('ls /root')

        assert excinfo.value.stderr == 'denied'

    def test_authentication_failure(self, mock_ssh_client):
        mock_ssh_client.return_value.connect.side_effect = paramiko.AuthenticationException('bad key')

        with pytest.raises(TransportError, match='authentication failed'):
            SSHTransport(host='web1', username='deploy').connect()

    def test_connection_refused(self, mock_ssh_client):
        mock_ssh_client.return_value.connect.side_effect = OSError('Connection refused')

        with pytest.raises(TransportError, match='Failed to connect'):
            SSHTransport(host='web1', username='deploy').connect()

    def test_missing_private_key(self, mock_ssh_client):
        transport = SSHTransport(host='web1', username='deploy', private_key='/nonexistent/id_rsa')

        with pytest.raises(TransportError, match='Private key not found'):
            transport.connect()

    def test_private_key(self, mock_ssh_client, tmp_path):
        key = tmp_path / 'id_ed25519'
        key.write_text('key')

        SSHTransport(host='web1', username='deploy', private_key=str(key)).connect()

        assert mock_ssh_client.return_value.connect.call_args.kwargs['key_filename'] == str(key)

    def test_open_stream(self, mock_ssh_client):
        stdin, stdout, stderr = self._channel_files(status=0)
        mock_ssh_client.return_value.exec_command.return_value = (stdin, stdout, stderr)

        capture = SSHTransport(host='web1', username='deploy').open_stream('tar -czf - /var/www')

        assert capture.stdout is stdout
        assert capture.wait() == (0, '')
        capture.kill()
        stdout.channel.close.assert_called_once()

    def test_close(self, mock_ssh_client):
        transport = SSHTransport(host='web1', username='deploy')
        transport.connect()
        transport.close()

        mock_ssh_client.return_value.close.assert_called_once()
        assert transport.ssh_client is None


class TestFactoryAndHooks:

    def test_create_local(self):
        assert isinstance(create_transport('local'), LocalTransport)

    def test_create_ssh(self):
        transport = create_transport('ssh', {'host': 'web1', 'port': '2222'})

        assert isinstance(transport, SSHTransport)
        assert transport.port == 2222
        assert transport.username == 'root'

    def test_create_ssh_requires_host(self):
        with pytest.raises(ValueError):
            create_transport('ssh', {})

    def test_invalid_type(self):
        with pytest.raises(ValueError):
            create_transport('ftp')

    def test_run_commands_stops_at_first_failure(self, make_transport):
        transport = make_transport({'second': CommandResult('', 'nope', 1)})

        with pytest.raises(TransportError):
            run_commands(transport, ['first', 'second', 'third'])

        assert transport.commands == ['first', 'second']
