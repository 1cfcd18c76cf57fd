"""
Tests for the cancel flow.

Test Coverage:
1. Offer resolution: per-reason mapping, account default, field fallback
2. Session creation on first fetch, link validation, config pinning
3. Survey -> offer_presented (discount) and survey -> cancelled (offer none)
4. Resume at the offer step after a reload
5. Accept / decline, repeated calls return the same terminal view
6. complete() from any non-terminal state
7. Saved customer record and the apply-offer collaborator
"""
from datetime import timedelta

import pytest

from app.errors import NotFound, ValidationError
from app.models.db_models import (
    CancelSessionDB, CancelSessionStatus, CompletionAction, OfferType, SavedCustomerDB,
)
from app.services.cancel_flow import (
    CancelFlowConfig,
    CancelSessionEngine,
    OfferConfigStore,
    OfferSettings,
    ReasonMapping,
    hash_token,
    resolve_offer,
)
from app.services.cancel_flow.offer_resolver import reason_key

from conftest import NOW


def discount_config(**settings) -> CancelFlowConfig:
    """too_expensive -> discount 20% / 3 months; everything else -> account default."""
    defaults = {
        "default_offer": OfferType.NONE,
        "reason_mappings": {
            "too_expensive": ReasonMapping(offer_type=OfferType.DISCOUNT, discount_percentage=20, discount_duration_months=3),
            "technical_issues": ReasonMapping(offer_type=OfferType.PAUSE, pause_duration_months=2),
        },
    }
    defaults.update(settings)
    return CancelFlowConfig(offer_settings=OfferSettings(**defaults))


class RecordingApplier:
    def __init__(self, fail=False):
        self.applied = []
        self.fail = fail

    def apply(self, saved_customer):
        if self.fail:
            raise RuntimeError("billing provider unavailable")
        self.applied.append(saved_customer.cancel_session_id)


class RecordingNotifier:
    def __init__(self):
        self.saved = []

    def customer_saved(self, saved_customer):
        self.saved.append(saved_customer.cancel_session_id)


@pytest.fixture
def applier():
    return RecordingApplier()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def session_engine(db, account, applier, notifier):
    OfferConfigStore(db).publish(account.id, discount_config())
    db.commit()
    return CancelSessionEngine(db, offer_applier=applier, notifier=notifier)


@pytest.fixture
def token(session_engine, account):
    return session_engine.mint_link(account.id, customer_reference="cus_1", subscription_reference="sub_1")["session_token"]


# =============================================================================
# OFFER RESOLUTION
# =============================================================================

class TestOfferResolution:

    def test_mapped_discount(self):
        offer = resolve_offer(discount_config().offer_settings, "too_expensive")
        assert offer.to_dict() == {"type": "discount", "percentage": 20, "duration_months": 3}

    def test_unmapped_reason_uses_default_none(self):
        assert resolve_offer(discount_config().offer_settings, "need_a_break") is None

    def test_unmapped_reason_uses_default_pause(self):
        settings = discount_config(default_offer=OfferType.PAUSE, pause_duration_months=1).offer_settings
        assert resolve_offer(settings, "need_a_break").to_dict() == {"type": "pause", "duration_months": 1}

    def test_mapping_without_overrides_uses_account_values(self):
        settings = OfferSettings(
            reason_mappings={"missing_features": ReasonMapping(offer_type=OfferType.DISCOUNT)},
            discount_percentage=35,
            discount_duration_months=6,
        )
        offer = resolve_offer(settings, "missing_features")
        assert (offer.percentage, offer.duration_months) == (35, 6)

    def test_pause_override(self):
        offer = resolve_offer(discount_config().offer_settings, "technical_issues")
        assert offer.to_dict() == {"type": "pause", "duration_months": 2}

    def test_other_reasons_share_the_other_mapping(self):
        assert reason_key("other: too slow") == "other"
        settings = OfferSettings(reason_mappings={"other": ReasonMapping(offer_type=OfferType.PAUSE)})
        assert resolve_offer(settings, "other: too slow").type == OfferType.PAUSE


# =============================================================================
# SESSION LIFECYCLE
# =============================================================================

class TestSessionCreation:

    def test_first_fetch_creates_session(self, db, session_engine, token):
        view = session_engine.get_or_create(token, NOW)
        db.commit()

        session = db.get(CancelSessionDB, hash_token(token))
        assert session is not None
        assert session.status == CancelSessionStatus.SURVEY_PENDING
        assert session.customer_reference == "cus_1"
        assert session.config_version == 1
        assert view.step == "survey"
        assert "offer_settings" not in view.to_dict()["config"]

    def test_raw_token_is_not_stored(self, db, session_engine, token):
        session_engine.get_or_create(token, NOW)
        db.commit()
        assert db.query(CancelSessionDB).one().id == hash_token(token)
        assert len(hash_token(token)) == 64

    def test_second_fetch_reuses_session(self, db, session_engine, token):
        session_engine.get_or_create(token, NOW)
        session_engine.get_or_create(token, NOW)
        db.commit()
        assert db.query(CancelSessionDB).count() == 1

    def test_garbage_token_not_found(self, session_engine):
        with pytest.raises(NotFound):
            session_engine.get_or_create("not-a-token", NOW)

    def test_expired_link_not_found(self, session_engine, account):
        expired = session_engine.mint_link(account.id, ttl_hours=-1)["session_token"]
        with pytest.raises(NotFound):
            session_engine.get_or_create(expired, NOW)

    def test_link_signed_with_other_key_not_found(self, db, account):
        forged = CancelSessionEngine(db, secret_key="other-key").mint_link(account.id)["session_token"]
        with pytest.raises(NotFound):
            CancelSessionEngine(db).get_or_create(forged, NOW)

    def test_unconfigured_account_not_found(self, db, account):
        session_engine = CancelSessionEngine(db)
        token = session_engine.mint_link(account.id)["session_token"]
        with pytest.raises(NotFound):
            session_engine.get_or_create(token, NOW)

    def test_survey_before_fetch_not_found(self, session_engine, token):
        with pytest.raises(NotFound):
            session_engine.submit_survey(token, "too_expensive", now=NOW)


class TestSurvey:

    def test_mapped_reason_presents_discount(self, db, session_engine, token):
        session_engine.get_or_create(token, NOW)
        view = session_engine.submit_survey(token, "too_expensive", now=NOW)
        db.commit()

        assert view.session.status == CancelSessionStatus.OFFER_PRESENTED
        assert view.session.offer_type_presented == OfferType.DISCOUNT
        assert view.offer.to_dict() == {"type": "discount", "percentage": 20, "duration_months": 3}
        assert view.step == "offer"

    def test_reason_with_no_offer_cancels_immediately(self, db, session_engine, token):
        session_engine.get_or_create(token, NOW)
        view = session_engine.submit_survey(token, "need_a_break", now=NOW)
        db.commit()

        assert view.session.status == CancelSessionStatus.CANCELLED
        assert view.offer is None
        assert view.to_dict()["offer"] is None
        assert view.session.resolved_at == NOW

    def test_reload_resumes_at_offer_step(self, db, session_engine, token):
        session_engine.get_or_create(token, NOW)
        session_engine.submit_survey(token, "too_expensive", now=NOW)
        db.commit()

        resumed = session_engine.get_or_create(token, NOW + timedelta(minutes=5))
        assert resumed.step == "offer"
        assert resumed.session.status == CancelSessionStatus.OFFER_PRESENTED
        assert resumed.offer.percentage == 20

    def test_second_survey_does_not_reprompt(self, db, session_engine, token):
        session_engine.get_or_create(token, NOW)
        session_engine.submit_survey(token, "too_expensive", now=NOW)
        again = session_engine.submit_survey(token, "need_a_break", now=NOW)

        assert again.transitioned is False
        assert again.session.exit_reason == "too_expensive"
        assert again.session.status == CancelSessionStatus.OFFER_PRESENTED

    def test_unknown_reason_rejected(self, session_engine, token):
        session_engine.get_or_create(token, NOW)
        with pytest.raises(ValidationError):
            session_engine.submit_survey(token, "the_moon_is_full", now=NOW)

    def test_missing_reason_rejected(self, session_engine, token):
        session_engine.get_or_create(token, NOW)
        with pytest.raises(ValidationError):
            session_engine.submit_survey(token, "   ", now=NOW)

    def test_other_reason_keeps_custom_text(self, db, session_engine, token):
        session_engine.get_or_create(token, NOW)
        view = session_engine.submit_survey(token, "other:  switching teams ", custom_feedback="thanks", now=NOW)
        assert view.session.exit_reason == "other: switching teams"
        assert view.session.custom_feedback == "thanks"

    def test_pinned_config_survives_republish(self, db, session_engine, token, account):
        session_engine.get_or_create(token, NOW)
        OfferConfigStore(db).publish(account.id, discount_config(
            reason_mappings={"too_expensive": ReasonMapping(offer_type=OfferType.PAUSE)},
        ))
        db.commit()

        view = session_engine.submit_survey(token, "too_expensive", now=NOW)
        assert view.offer.type == OfferType.DISCOUNT
        assert view.config.version == 1


class TestOfferResponse:

    def presented(self, session_engine, token):
        session_engine.get_or_create(token, NOW)
        session_engine.submit_survey(token, "too_expensive", now=NOW)

    def test_accept_saves_customer(self, db, session_engine, token, applier, notifier):
        self.presented(session_engine, token)
        view = session_engine.respond_to_offer(token, True, now=NOW)
        db.commit()

        assert view.session.status == CancelSessionStatus.SAVED
        assert view.session.offer_accepted is True
        assert view.step == "complete"

        saved = db.query(SavedCustomerDB).one()
        assert saved.save_type == OfferType.DISCOUNT
        assert saved.discount_percentage == 20
        assert saved.discount_duration_months == 3
        assert saved.pause_months is None
        assert saved.offer_applied is True
        assert applier.applied == [hash_token(token)]
        assert notifier.saved == [hash_token(token)]

    def test_accept_twice_returns_same_terminal_state(self, db, session_engine, token, applier):
        self.presented(session_engine, token)
        session_engine.respond_to_offer(token, True, now=NOW)
        again = session_engine.respond_to_offer(token, True, now=NOW)
        db.commit()

        assert again.transitioned is False
        assert again.session.status == CancelSessionStatus.SAVED
        assert again.session.offer_accepted is True
        assert db.query(SavedCustomerDB).count() == 1
        assert len(applier.applied) == 1

    def test_decline_cancels(self, db, session_engine, token, applier):
        self.presented(session_engine, token)
        view = session_engine.respond_to_offer(token, False, now=NOW)

        assert view.session.status == CancelSessionStatus.CANCELLED
        assert view.session.offer_accepted is False
        assert applier.applied == []
        assert db.query(SavedCustomerDB).count() == 0

    def test_response_before_offer_is_ignored(self, session_engine, token):
        session_engine.get_or_create(token, NOW)
        view = session_engine.respond_to_offer(token, True, now=NOW)
        assert view.transitioned is False
        assert view.session.status == CancelSessionStatus.SURVEY_PENDING

    def test_apply_failure_is_recorded_not_raised(self, db, token):
        failing = CancelSessionEngine(db, offer_applier=RecordingApplier(fail=True))
        failing.get_or_create(token, NOW)
        failing.submit_survey(token, "too_expensive", now=NOW)
        view = failing.respond_to_offer(token, True, now=NOW)
        db.commit()

        saved = db.query(SavedCustomerDB).one()
        assert view.session.status == CancelSessionStatus.SAVED
        assert saved.offer_applied is False
        assert "billing provider unavailable" in saved.apply_error


class TestComplete:

    def test_complete_from_survey(self, db, session_engine, token):
        session_engine.get_or_create(token, NOW)
        view = session_engine.complete(token, "abandoned", now=NOW)

        assert view.session.status == CancelSessionStatus.CANCELLED
        assert view.session.completion_action == CompletionAction.ABANDONED

    def test_complete_from_offer(self, session_engine, token):
        session_engine.get_or_create(token, NOW)
        session_engine.submit_survey(token, "too_expensive", now=NOW)
        view = session_engine.complete(token, CompletionAction.CANCELLED, now=NOW)
        assert view.session.status == CancelSessionStatus.CANCELLED

    def test_complete_after_save_keeps_saved(self, session_engine, token):
        session_engine.get_or_create(token, NOW)
        session_engine.submit_survey(token, "too_expensive", now=NOW)
        session_engine.respond_to_offer(token, True, now=NOW)

        view = session_engine.complete(token, "cancelled", now=NOW)
        assert view.transitioned is False
        assert view.session.status == CancelSessionStatus.SAVED

    def test_invalid_action_rejected(self, session_engine, token):
        session_engine.get_or_create(token, NOW)
        with pytest.raises(ValidationError):
            session_engine.complete(token, "exploded", now=NOW)


# =============================================================================
# CONFIG STORE
# =============================================================================

class TestOfferConfigStore:

    def test_publish_increments_version(self, db, account):
        store = OfferConfigStore(db)
        first = store.publish(account.id, CancelFlowConfig())
        second = store.publish(account.id, CancelFlowConfig())
        assert (first.version, second.version) == (1, 2)
        assert store.latest(account.id).version == 2
        assert store.get_version(account.id, 1).version == 1

    def test_ensure_default_publishes_once(self, db, account):
        store = OfferConfigStore(db)
        store.ensure_default(account.id)
        config = store.ensure_default(account.id)
        assert config.version == 1
        assert config.offer_settings.discount_percentage == 20
        assert "other" in config.allowed_reasons()

    def test_missing_version_not_found(self, db, account):
        with pytest.raises(NotFound):
            OfferConfigStore(db).get_version(account.id, 7)
