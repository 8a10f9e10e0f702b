"""
Tests for models.py and errors.py: run outcomes, run sealing, suggestions.
"""

import pytest

from kbcrawler.errors import CredentialMissing, LoginLoopDetected, TwoFactorRequired, suggestion_for
from kbcrawler.models import (
    AuthType,
    ContentClassification,
    Credential,
    EncryptedPayload,
    ErrorKind,
    JobRun,
    Regime,
    RunOutcome,
    ScrapeError,
    ScrapeJob,
    ScrapeResult,
    derive_outcome,
)


def ok(url="https://docs.example.org/"):
    return ScrapeResult(url=url, regime=Regime.PUBLIC, content_classification=ContentClassification.PUBLIC)


def bad(url="https://docs.example.org/x"):
    return ScrapeResult(
        url=url,
        regime=Regime.PUBLIC,
        content_classification=ContentClassification.PUBLIC,
        error=ScrapeError(kind=ErrorKind.FETCH_ERROR, message="down"),
    )


# ====================================================================
# Outcomes
# ====================================================================

class TestDeriveOutcome:

    @pytest.mark.parametrize("results, expected", [
        ([ok(), ok()], RunOutcome.SUCCESS),
        ([ok(), bad()], RunOutcome.PARTIAL_FAILURE),
        ([bad(), bad()], RunOutcome.FAILURE),
        ([], RunOutcome.FAILURE),
    ])
    def test_outcomes(self, results, expected):
        assert derive_outcome(results) is expected

    def test_cancelled_is_failure(self):
        assert derive_outcome([ok(), ok()], cancelled=True) is RunOutcome.FAILURE


class TestJobRun:

    def test_finish_seals_run(self):
        run = JobRun(job_id="j", tenant_id="acme")
        run.finish([ok(), bad()])
        assert run.outcome is RunOutcome.PARTIAL_FAILURE
        assert run.is_finished
        assert run.to_dict()["per_url_results"][1]["error"]["kind"] == "fetch_error"

    def test_finish_twice_rejected(self):
        run = JobRun(job_id="j", tenant_id="acme")
        run.finish([ok()])
        with pytest.raises(RuntimeError):
            run.finish([bad()])
        assert run.outcome is RunOutcome.SUCCESS


class TestScrapeJob:

    def test_from_dict_deduplicates_urls(self):
        job = ScrapeJob.from_dict({
            "tenant_id": "acme",
            "schedule": "*/15 * * * *",
            "target_urls": ["https://a.example.org/", "https://a.example.org/"],
        })
        assert job.target_urls == {"https://a.example.org/"}
        assert job.concurrency_limit == 2
        assert job.is_active
        assert job.id


class TestCredentialRecord:

    def test_stale_flag(self):
        cred = Credential(
            tenant_id="acme",
            domain_key="support.sap.com",
            auth_type=AuthType.FORM,
            encrypted_payload=EncryptedPayload("c", "i", "t"),
            consecutive_failures=3,
        )
        assert cred.is_stale


# ====================================================================
# Suggestions
# ====================================================================

class TestSuggestions:

    def test_missing_credential_names_inferred_type(self):
        exc = CredentialMissing("none", domain="me.sap.com", auth_type="basic")
        assert "me.sap.com" in exc.suggestion
        assert "'basic'" in exc.suggestion
        assert exc.to_record().kind is ErrorKind.CREDENTIAL_MISSING

    def test_every_failure_kind_has_a_suggestion(self):
        for kind in ErrorKind:
            assert suggestion_for(kind, "example.org"), kind

    def test_kinds(self):
        assert LoginLoopDetected("x").kind.value == "login_loop_detected"
        assert TwoFactorRequired("x").kind is ErrorKind.TWO_FACTOR_REQUIRED
