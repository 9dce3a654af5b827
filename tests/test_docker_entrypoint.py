import importlib
import os
import sys
from dataclasses import replace

import pytest


entrypoint = importlib.import_module('mysql_entrypoint.docker_entrypoint')
entrypoint_config = importlib.import_module('mysql_entrypoint.config')
runtime = importlib.import_module('mysql_entrypoint.runtime')

DataDirState = entrypoint.DataDirState


class ExecCalled(Exception):
    def __init__(self, file, args):
        super().__init__(file, args)
        self.file = file
        self.args_list = args


class _Recorder(list):
    pass


@pytest.fixture
def exec_calls(monkeypatch):
    def fake_execvp(file, args):
        raise ExecCalled(file, list(args))

    monkeypatch.setattr(entrypoint.os, 'execvp', fake_execvp)


@pytest.fixture
def calls(monkeypatch, tmp_path, help_output_factory):
    """Replace every side effect of the bootstrap with a recorder."""

    recorded = _Recorder()
    help_output = help_output_factory(
        {
            'datadir': str(tmp_path / 'data'),
            'socket': str(tmp_path / 'run' / 'mysqld.sock'),
        }
    )
    initdb = tmp_path / 'initdb'
    initdb.mkdir()

    monkeypatch.setattr(entrypoint, 'INITDB_DIR', str(initdb))
    monkeypatch.setattr(entrypoint.os, 'environ', os.environ.copy())
    monkeypatch.setattr(entrypoint.os, 'geteuid', lambda: 999)
    monkeypatch.setattr(entrypoint, 'check_config', lambda command: recorded.append('check_config'))
    monkeypatch.setattr(entrypoint, 'load_help_output', lambda command: help_output)
    monkeypatch.setattr(entrypoint, 'create_directories', lambda dirs: recorded.append('create_directories'))
    monkeypatch.setattr(entrypoint, 'init_database_dir', lambda command: recorded.append('init_database_dir'))
    monkeypatch.setattr(entrypoint, 'socket_fix', lambda config: recorded.append('socket_fix'))
    monkeypatch.setattr(
        entrypoint.TemporaryServer,
        'start',
        lambda self, config: recorded.append('start'),
    )
    monkeypatch.setattr(
        entrypoint.TemporaryServer,
        'stop',
        lambda self, config: recorded.append(('stop', config.root_password)),
    )

    def fake_setup_database(config):
        recorded.append('setup_database')
        if config.random_root_password:
            config = replace(config, root_password='generated')
        return config, 'plan'

    def fake_expire(config, plan):
        recorded.append(('expire_root_user', plan))

    def fake_run_all(self, entries):
        recorded.append(('init_scripts', [entry.path for entry in entries]))

    monkeypatch.setattr(entrypoint, 'setup_database', fake_setup_database)
    monkeypatch.setattr(entrypoint, 'expire_root_user', fake_expire)
    monkeypatch.setattr(entrypoint.InitScriptRunner, 'run_all', fake_run_all)
    recorded.initdb = initdb
    recorded.datadir = tmp_path / 'data'
    return recorded


@pytest.mark.parametrize(
    'argv, expected',
    [
        ([], ['mysqld']),
        (['--character-set-server=utf8mb4'], ['mysqld', '--character-set-server=utf8mb4']),
        (['mysqld', '--skip-log-bin'], ['mysqld', '--skip-log-bin']),
        (['bash', '-c', 'id'], ['bash', '-c', 'id']),
    ],
)
def test_normalize_args(argv, expected):
    assert entrypoint.normalize_args(argv) == expected


@pytest.mark.parametrize('flag', ['-?', '--help', '--print-defaults', '-V', '--version'])
def test_want_help(flag):
    assert entrypoint.want_help(['mysqld', '--skip-log-bin', flag])


def test_want_help_ignores_regular_flags():
    assert not entrypoint.want_help(['mysqld', '--verbose'])


@pytest.mark.parametrize('argv', [['--help'], ['mysqld', '--version'], ['-V']])
def test_help_request_hands_off_without_bootstrap(monkeypatch, exec_calls, argv):
    def fail_run(self):
        raise AssertionError('bootstrap must not run')

    monkeypatch.setattr(entrypoint.Bootstrap, 'run', fail_run)

    with pytest.raises(ExecCalled) as excinfo:
        entrypoint.main(argv)

    assert excinfo.value.file == 'mysqld'
    assert excinfo.value.args_list == entrypoint.normalize_args(argv)


def test_other_command_hands_off_unchanged(monkeypatch, exec_calls):
    def fail_run(self):
        raise AssertionError('bootstrap must not run')

    monkeypatch.setattr(entrypoint.Bootstrap, 'run', fail_run)

    with pytest.raises(ExecCalled) as excinfo:
        entrypoint.main(['bash', '-c', 'echo hi'])

    assert excinfo.value.args_list == ['bash', '-c', 'echo hi']


def test_fresh_datadir_is_initialized_in_order(calls, exec_calls):
    environ = {'MYSQL_ROOT_PASSWORD': 'pw', 'MYSQL_DATABASE': 'shop'}
    bootstrap = entrypoint.Bootstrap(['mysqld'], environ, initdb_dir=str(calls.initdb))

    bootstrap.run()

    assert calls == [
        'check_config',
        'create_directories',
        'init_database_dir',
        'start',
        'socket_fix',
        'setup_database',
        ('init_scripts', []),
        ('expire_root_user', 'plan'),
        ('stop', 'pw'),
    ]
    with pytest.raises(ExecCalled) as excinfo:
        bootstrap.hand_off()
    assert excinfo.value.args_list == ['mysqld']


def test_generated_password_reaches_init_scripts_and_shutdown(calls, exec_calls):
    environ = {'MYSQL_RANDOM_ROOT_PASSWORD': '1'}
    bootstrap = entrypoint.Bootstrap(['mysqld'], environ, initdb_dir=str(calls.initdb))

    bootstrap.run()

    assert environ['MYSQL_ROOT_PASSWORD'] == 'generated'
    assert ('stop', 'generated') in calls


def test_pre_existing_datadir_only_fixes_socket(calls, exec_calls):
    (calls.datadir / 'mysql').mkdir(parents=True)

    for _ in range(2):
        entrypoint.Bootstrap(['mysqld'], {}, initdb_dir=str(calls.initdb)).run()

    assert calls == [
        'check_config',
        'create_directories',
        'socket_fix',
        'check_config',
        'create_directories',
        'socket_fix',
    ]


def test_datadir_is_classified_once(monkeypatch, calls):
    classified = []

    def fake_classify(datadir):
        classified.append(datadir)
        return DataDirState.PRE_EXISTING

    monkeypatch.setattr(entrypoint, 'classify_datadir', fake_classify)
    bootstrap = entrypoint.Bootstrap(['mysqld'], {}, initdb_dir=str(calls.initdb))

    bootstrap.run()

    assert bootstrap.datadir_state is DataDirState.PRE_EXISTING
    assert classified == [str(calls.datadir)]


def test_root_drops_privileges_before_classification(monkeypatch, calls, exec_calls):
    monkeypatch.setattr(entrypoint.os, 'geteuid', lambda: 0)

    def fail_classify(datadir):
        raise AssertionError('classification belongs to the unprivileged run')

    monkeypatch.setattr(entrypoint, 'classify_datadir', fail_classify)
    bootstrap = entrypoint.Bootstrap(['mysqld', '--skip-log-bin'], {}, initdb_dir=str(calls.initdb))

    with pytest.raises(ExecCalled) as excinfo:
        bootstrap.run()

    assert excinfo.value.file == 'gosu'
    assert excinfo.value.args_list == [
        'gosu',
        'mysql',
        sys.executable,
        '-m',
        'mysql_entrypoint.docker_entrypoint',
        'mysqld',
        '--skip-log-bin',
    ]


def test_missing_password_option_fails_before_server_start(calls, exec_calls, capsys):
    assert entrypoint.main(['mysqld']) == 1

    assert 'start' not in calls
    assert 'init_database_dir' not in calls
    assert 'password option is not specified' in capsys.readouterr().err


def test_root_as_regular_user_fails_before_server_start(monkeypatch, calls, exec_calls, capsys):
    monkeypatch.setenv('MYSQL_ROOT_PASSWORD', 'pw')
    monkeypatch.setenv('MYSQL_USER', 'root')

    assert entrypoint.main([]) == 1

    assert 'start' not in calls
    err = capsys.readouterr().err
    assert '[ERROR] [Entrypoint]: MYSQL_USER="root"' in err


def test_conflicting_secret_variables_fail(monkeypatch, calls, exec_calls, tmp_path, capsys):
    secret = tmp_path / 'secret'
    secret.write_text('pw')
    monkeypatch.setenv('MYSQL_ROOT_PASSWORD', 'pw')
    monkeypatch.setenv('MYSQL_ROOT_PASSWORD_FILE', str(secret))

    assert entrypoint.main(['mysqld']) == 1

    assert calls == ['check_config']
    assert 'Both MYSQL_ROOT_PASSWORD and MYSQL_ROOT_PASSWORD_FILE are set' in capsys.readouterr().err


def test_unlistable_init_dir_fails_before_initialize(monkeypatch, calls, exec_calls, tmp_path, capsys):
    monkeypatch.setenv('MYSQL_ROOT_PASSWORD', 'pw')
    monkeypatch.setattr(entrypoint, 'INITDB_DIR', str(tmp_path / 'missing'))

    assert entrypoint.main(['mysqld']) == 1

    assert 'init_database_dir' not in calls
    assert 'Unable to list init scripts' in capsys.readouterr().err


def test_main_hands_off_after_successful_bootstrap(monkeypatch, calls, exec_calls):
    monkeypatch.setenv('MYSQL_ALLOW_EMPTY_PASSWORD', 'yes')

    with pytest.raises(ExecCalled) as excinfo:
        entrypoint.main(['mysqld', '--skip-log-bin'])

    assert excinfo.value.args_list == ['mysqld', '--skip-log-bin']
    assert calls[-1] == ('stop', '')
