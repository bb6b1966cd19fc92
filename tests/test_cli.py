from amyqueue import cli


def test_banner_and_status(capsys):
    assert cli.main([]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "AmyQueue CLI vdev (built: unknown)"
    assert lines[1] == ""
    assert lines[2] == "CLI tool - coming soon!"
    assert lines[3] == "Check docs/ROADMAP.md for implementation status"


def test_runs_without_arguments(capsys):
    assert cli.main() == 0
    assert "coming soon" in capsys.readouterr().out