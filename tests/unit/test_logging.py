from studiostyle import __version__
from studiostyle.core.exceptions import ProviderError
from studiostyle.core.logging import LogContext, add_app_context, job_id_var, operation_var


def _context() -> dict:
    return add_app_context(None, "info", {"event": "test"})


def test_entries_carry_version_without_job_context():
    assert _context() == {"event": "test", "version": __version__}


def test_log_context_binds_and_restores_fields():
    with LogContext(job_id="outer-job", operation="process"):
        assert _context()["job_id"] == "outer-job"
        with LogContext(operation="remove_background"):
            inner = _context()
            assert inner["job_id"] == "outer-job"
            assert inner["operation"] == "remove_background"
        assert _context()["operation"] == "process"

    assert job_id_var.get() is None
    assert operation_var.get() is None


def test_explicit_fields_win_over_context():
    with LogContext(job_id="ctx-job"):
        entry = add_app_context(None, "info", {"event": "test", "job_id": "explicit"})
    assert entry["job_id"] == "explicit"


def test_errors_pick_up_job_id_from_context():
    with LogContext(job_id="photo.png-1-abc"):
        error = ProviderError("boom")
    assert error.job_id == "photo.png-1-abc"
