import json
import os
import subprocess
import sys


def run_cli(tmp_path, *args, **env):
    full_env = dict(os.environ)
    for key in ('GOOGLE_REFRESH_TOKEN', 'USE_KEYRING'):
        full_env.pop(key, None)
    full_env.update({
        'LOCAL_DIRECTORY': str(tmp_path / 'vault'),
        'STATE_FILE': str(tmp_path / 'state.json'),
        'LOG_FILE': str(tmp_path / 'drive-mirror.log'),
    })
    full_env.update(env)
    return subprocess.run([sys.executable, '-m', 'drive_mirror', *args],
                          capture_output=True, text=True, env=full_env, cwd=str(tmp_path))


def test_cli_version(tmp_path):
    result = run_cli(tmp_path, '--version')
    assert result.returncode == 0
    assert 'drive-mirror' in result.stdout


def test_cli_status_without_state(tmp_path):
    # Status should emit JSON summary even before state file exists
    cp = run_cli(tmp_path, '--status')
    assert cp.returncode == 0
    data = json.loads(cp.stdout)
    assert data['missing'] is True
    assert data['state_file'] == str(tmp_path / 'state.json')


def test_cli_status_with_state(tmp_path):
    state = {
        'version': 2,
        'sync_index': {'a.md': {'path': 'a.md', 'driveId': 'x1', 'hash': 'h', 'lastModified': 1}},
        'excluded_folders': ['Private'],
        'remote_folder_id': 'root-1',
    }
    (tmp_path / 'state.json').write_text(json.dumps(state))
    cp = run_cli(tmp_path, '--status')
    assert cp.returncode == 0
    data = json.loads(cp.stdout)
    assert data['files_tracked'] == 1
    assert data['remote_folder_id'] == 'root-1'
    assert data['sample_files'] == ['a.md']


def test_cli_missing_credentials(tmp_path):
    cp = run_cli(tmp_path, '--once')
    assert cp.returncode == 2
