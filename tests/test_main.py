import pytest

from her2amp.main import DEFAULT_ORDER, _parse_args, _resolve_plan, main


def test_plan_until():
    assert _resolve_plan(_parse_args(["--until", "diff_expr"])) == ["data_integrate", "diff_expr"]


def test_plan_all_and_call():
    assert _resolve_plan(_parse_args(["--all"])) == DEFAULT_ORDER
    assert _resolve_plan(_parse_args(["--call", "diff_expr, survival"])) == ["diff_expr", "survival"]


@pytest.mark.parametrize("argv", [["--until", "nope"], []])
def test_bad_plan_exits_2(argv):
    with pytest.raises(SystemExit) as exc:
        _resolve_plan(_parse_args(argv))
    assert exc.value.code == 2


def test_missing_config_exits_2(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "missing.yaml"))
    with pytest.raises(SystemExit) as exc:
        main(["--call", "data_integrate"])
    assert exc.value.code == 2
    assert "missing file" in capsys.readouterr().err


def test_unknown_step_exits_2(study_cfg, monkeypatch):
    monkeypatch.setenv("CONFIG_PATH", study_cfg["_config_path"])
    with pytest.raises(SystemExit) as exc:
        main(["--call", "data_integrate,plot_everything"])
    assert exc.value.code == 2


def test_call_data_integrate(study_cfg, tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("CONFIG_PATH", study_cfg["_config_path"])
    with pytest.raises(SystemExit) as exc:
        main(["--call", "data_integrate"])
    assert exc.value.code == 0
    out = capsys.readouterr().out
    assert "===== RUN data_integrate =====" in out
    assert "===== DONE data_integrate [OK]" in out
    assert (tmp_path / "data" / "results" / "integrated" / "join_report.json").exists()


def test_failing_step_exits_1(study_cfg, tmp_path, monkeypatch, capsys):
    (tmp_path / "data" / "raw" / "data_cna.txt").unlink()
    monkeypatch.setenv("CONFIG_PATH", study_cfg["_config_path"])
    with pytest.raises(SystemExit) as exc:
        main(["--until", "diff_expr"])
    assert exc.value.code == 1
    captured = capsys.readouterr()
    assert "FileNotFoundError" in captured.err
    assert "RUN diff_expr" not in captured.out


def test_help_lists_options(capsys):
    with pytest.raises(SystemExit) as exc:
        _parse_args(["--help"])
    assert exc.value.code == 0
    out = capsys.readouterr().out
    assert "Run default sequence up to this step" in out
