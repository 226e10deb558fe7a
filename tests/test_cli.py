"""
Tests for the beacon-analyze command line.
"""

import orjson
import pytest

from beacon_analyzer.cli import main
from beacon_analyzer.samples import cobalt_strike_sample


def run(*argv):
    with pytest.raises(SystemExit) as excinfo:
        main(list(argv))
    return excinfo.value.code


def test_analyze_writes_reports(tmp_path, capsys):
    log = tmp_path / 'beacon.json'
    log.write_bytes(orjson.dumps(cobalt_strike_sample(start_ms=1709294400000)))
    run_dir = tmp_path / 'out'

    code = run('analyze', str(log), '--offline', '--run-dir', str(run_dir),
               '--history', str(tmp_path / 'history.json'))

    assert code == 0
    report = orjson.loads((run_dir / 'analysis.json').read_bytes())
    assert report['classification'] == 'CRITICAL'
    assert report['sources']['threat_intel'] == 'disabled'
    text = (run_dir / 'analysis.txt').read_text()
    assert 'Classification: CRITICAL' in text
    assert 'Cobalt Strike' in text
    lines = dict(line.split(': ', 1) for line in text.splitlines() if ': ' in line)
    assert lines['Average payload'].startswith('1.') and lines['Average payload'].endswith(' KB')
    assert lines['Total transferred'].endswith(' KB')
    assert 'CRITICAL' in capsys.readouterr().out

    assert run('history', '--history', str(tmp_path / 'history.json'), 'export', '--format', 'csv') == 0
    assert 'beacon.json' in capsys.readouterr().out


def test_analyze_rejects_bad_input(tmp_path, capsys):
    log = tmp_path / 'empty.json'
    log.write_text('{"connections": [{"timestamp": 1}]}')

    assert run('analyze', str(log), '--offline', '--run-dir', str(tmp_path / 'out')) == 1
    assert 'Insufficient data' in capsys.readouterr().out


def test_rules_commands(tmp_path, capsys):
    rules = str(tmp_path / 'rules.json')

    assert run('rules', '--rules', rules, 'add', 'cidr', '185.220.101.0/24',
               '--malware', 'Cobalt Strike', '--confidence', '90') == 0
    rule_id = capsys.readouterr().out.split()[-1]

    assert run('rules', '--rules', rules, 'list') == 0
    assert '185.220.101.0/24' in capsys.readouterr().out

    assert run('rules', '--rules', rules, 'add', 'ip', 'not-an-ip') == 1
    assert run('rules', '--rules', rules, 'remove', rule_id) == 0
    assert run('rules', '--rules', rules, 'remove', rule_id) == 1


def test_sample_command(tmp_path):
    out = tmp_path / 'sample.json'
    assert run('sample', 'metasploit', '-o', str(out)) == 0
    assert len(orjson.loads(out.read_bytes())['connections']) == 60
