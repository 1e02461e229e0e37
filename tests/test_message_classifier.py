"""Tests for the message classifier cascade: auto-reply, PO, explicit request,
weighted scoring with hard rules, duplicate detection."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import make_attachment
from src.agents.message_classifier import MessageClassifier, classify_message
from src.core.config import Settings
from src.core.models import Verdict


@pytest.fixture
def clf(duplicates, suppliers, settings):
    return MessageClassifier(duplicates=duplicates, suppliers=suppliers, settings=settings)


class TestExplicitRequest:

    def test_rfq_subject(self, clf, make_message):
        msg = make_message("RFQ for bearings #4521", "Hello,\nPlease see the list attached.\nThanks")
        v = clf.classify(msg)
        assert v.verdict == Verdict.REQUEST
        assert v.confidence >= 90
        assert v.matched_request_id is None
        assert any("explicit request" in r for r in v.reasons)

    def test_french_body_phrase(self, clf, make_message):
        v = clf.classify(make_message("Pompes", "Bonjour,\nMerci de nous coter les articles suivants."))
        assert v.verdict == Verdict.REQUEST

    def test_html_only_body(self, clf, make_message):
        msg = make_message("Articles", "", body_html="<p>Merci de nous coter les articles suivants</p>")
        assert clf.classify(msg).verdict == Verdict.REQUEST


class TestSupplierOffer:

    def test_hard_rule_quote_number_validity_totals(self, clf, make_message):
        body = "Dear buyer,\nPlease find our offer.\nValid until 30 days.\nTotal: 4,500 EUR\n"
        v = clf.classify(make_message("Our Quotation Q-2291", body))
        assert v.verdict == Verdict.SUPPLIER_OFFER
        assert any("hard rule" in r for r in v.reasons)
        assert not v.is_request

    def test_margin_offer_without_hard_rule(self, clf, make_message):
        body = ("Suite à votre demande, veuillez trouver notre meilleure offre.\n"
                "Prix unitaire 120 EUR.")
        v = clf.classify(make_message("Notre offre", body))
        assert v.verdict == Verdict.SUPPLIER_OFFER
        assert not any("hard rule" in r for r in v.reasons)
        assert v.scores["offer"] > v.scores["request"]

    def test_bank_details_and_totals(self, clf, make_message):
        body = "Montant total 12 000 MAD\nIBAN MA64 0000 0000\n"
        assert clf.classify(make_message("Facture", body)).verdict == Verdict.SUPPLIER_OFFER

    def test_known_supplier_weighs_offer(self, duplicates, suppliers, settings, make_message):
        msg = make_message("Bearings", "Hello", sender="sales@bearings-direct.example")
        with_sup = MessageClassifier(duplicates=duplicates, suppliers=suppliers, settings=settings)
        without = MessageClassifier(duplicates=duplicates, settings=settings)
        assert with_sup.score(msg).scores["offer"] == without.score(msg).scores["offer"] + 2

    def test_offer_attachment_name(self, clf, make_message):
        msg = make_message("Documents", "Hello",
                           attachments=[make_attachment("Quotation_2291.pdf", b"%PDF-1.4")])
        assert clf.score(msg).scores["offer"] >= 3

    def test_request_attachment_name_not_offer(self, clf, make_message):
        msg = make_message("Documents", "Hello",
                           attachments=[make_attachment("demande_de_devis.pdf", b"%PDF-1.4")])
        scores = clf.score(msg).scores
        assert scores["offer"] == 0
        assert scores["request"] >= 2


class TestPurchaseOrder:

    def test_bon_de_commande(self, clf, make_message):
        msg = make_message("Bon de commande N° 4587", "Veuillez trouver ci-joint notre bon de commande.")
        v = clf.classify(msg)
        assert v.verdict == Verdict.PURCHASE_ORDER
        assert v.confidence == 90

    def test_subject_starting_with_po(self, clf, make_message):
        assert clf.classify(make_message("PO 4500012345 - bearings", "See attached")).verdict == Verdict.PURCHASE_ORDER

    def test_po_before_explicit_request(self, clf, make_message):
        msg = make_message("RFQ 1234", "This is our purchase order for the items quoted.")
        assert clf.classify(msg).verdict == Verdict.PURCHASE_ORDER

    def test_po_attachment(self, clf, make_message):
        msg = make_message("Documents", "Voir pièce jointe",
                           attachments=[make_attachment("PO_12345.pdf", b"%PDF-1.4")])
        assert clf.classify(msg).verdict == Verdict.PURCHASE_ORDER


class TestAutoReply:

    def test_auto_submitted_header(self, clf, make_message):
        msg = make_message("RFQ pumps", "I am away", headers={"auto-submitted": "auto-replied"})
        v = clf.classify(msg)
        assert v.verdict == Verdict.REMINDER_DUPLICATE
        assert v.matched_request_id is None

    def test_auto_submitted_no_is_human(self, clf, make_message):
        msg = make_message("RFQ pumps", "List attached", headers={"Auto-Submitted": "no"})
        assert clf.classify(msg).verdict == Verdict.REQUEST

    def test_out_of_office_subject(self, clf, make_message):
        v = clf.classify(make_message("Out of Office: Re: RFQ 1234", "Back on Monday"))
        assert v.verdict == Verdict.REMINDER_DUPLICATE
        assert any("out of office" in r for r in v.reasons)


class TestDuplicate:

    def test_reply_on_internal_reference(self, clf, make_message):
        v = clf.classify(make_message("RE: Demande de prix DDP-20260113-810", "Bonjour, des nouvelles ?"))
        assert v.verdict == Verdict.REMINDER_DUPLICATE
        assert v.matched_request_id == "DDP-20260113-810"

    def test_internal_reference_needs_reply_or_chaser(self, clf, make_message):
        v = clf.classify(make_message("Demande de prix DDP-20260113-810", "Nouvelle liste ci-dessous."))
        assert v.verdict == Verdict.REQUEST

    def test_chaser_on_internal_reference(self, clf, make_message):
        v = clf.classify(make_message("Demande de prix", "Relance concernant DDP-20260113-810"))
        assert v.verdict == Verdict.REMINDER_DUPLICATE
        assert v.matched_request_id == "DDP-20260113-810"

    def test_known_external_reference(self, clf, make_message):
        v = clf.classify(make_message("Pompes PR-00012345", "Bonjour, merci de nous coter."))
        assert v.verdict == Verdict.REMINDER_DUPLICATE
        assert v.matched_request_id == "DDP-20260105-101"

    def test_thread_headers(self, clf, make_message):
        msg = make_message("Question", "Could you quote 5 pumps?",
                           in_reply_to="<orig-101@client.example>")
        v = clf.classify(msg)
        assert v.verdict == Verdict.REMINDER_DUPLICATE
        assert v.matched_request_id == "DDP-20260105-101"

    def test_subject_and_sender_on_reply(self, clf, make_message):
        msg = make_message("RE: Demande de prix pompes", "Des nouvelles ?", sender="achats@client.example")
        v = clf.classify(msg)
        assert v.verdict == Verdict.REMINDER_DUPLICATE
        assert v.matched_request_id == "DDP-20260105-101"

    def test_subject_and_sender_alone_is_new_request(self, clf, make_message):
        msg = make_message("Demande de prix pompes", "Nouvelle liste.", sender="achats@client.example")
        assert clf.classify(msg).verdict == Verdict.REQUEST

    def test_reply_on_reference_with_offer_body(self, clf, make_message):
        body = "Our quotation Q-5521\nValidity: 30 days\nGrand total 900 EUR"
        v = clf.classify(make_message("RE: Demande de prix DDP-20260113-810", body))
        assert v.verdict == Verdict.REMINDER_DUPLICATE


class TestWeighted:

    def test_request_by_margin(self, clf, make_message):
        body = "Nous avons besoin de 10 pompes, pouvez-vous nous coter ? Merci de préciser le délai."
        v = clf.classify(make_message("Besoin urgent", body))
        assert v.verdict == Verdict.REQUEST
        assert 50 < v.confidence < 95
        assert v.scores["request"] >= 5

    def test_subject_hits_weigh_more(self, clf, make_message):
        in_subject = clf.score(make_message("Devis", "Hello")).scores["request"]
        in_body = clf.score(make_message("Hello", "Devis")).scores["request"]
        assert in_subject == 1.5
        assert in_body == 1

    def test_no_signal_is_ambiguous(self, clf, make_message):
        v = clf.classify(make_message("Pumps", "Hello,\nsee below."))
        assert v.verdict == Verdict.AMBIGUOUS
        assert v.needs_review
        assert v.is_request

    def test_near_tie_is_ambiguous(self, clf, make_message):
        body = "Nous avons besoin de 2 pompes. Budget maximum 4500 EUR, remise souhaitée."
        v = clf.classify(make_message("Devis pompes", body))
        assert v.verdict == Verdict.AMBIGUOUS
        assert v.needs_review
        assert v.scores["request"] == 3.5
        assert v.scores["offer"] == 3
        assert any("near tie" in r for r in v.reasons)

    def test_body_window(self, duplicates, make_message):
        narrow = MessageClassifier(duplicates=duplicates, settings=Settings(llm_mode="off", body_window_chars=50))
        msg = make_message("Pumps", "x" * 200 + "\nNous avons besoin de pompes, pouvez-vous nous coter ?")
        assert narrow.classify(msg).verdict == Verdict.AMBIGUOUS


class TestRobustness:

    def test_idempotent(self, clf, make_message):
        msg = make_message("RFQ for bearings #4521", "List attached")
        assert clf.classify(msg).to_dict() == clf.classify(msg).to_dict()

    def test_lookup_failure_becomes_ambiguous(self, make_message):
        class Broken:
            def find_by_external_reference(self, ref):
                raise RuntimeError("index offline")
            find_by_message_id = find_by_external_reference
            find_by_subject_and_sender = find_by_external_reference

        clf = MessageClassifier(duplicates=Broken())
        v = clf.classify(make_message("Pompes PR-00012345", "Merci de nous coter."))
        assert v.verdict == Verdict.AMBIGUOUS
        assert v.needs_review
        assert "index offline" in v.reasons[0]

    def test_one_shot_helper(self, make_message):
        assert classify_message(make_message("RFQ 88", "list")).verdict == Verdict.REQUEST

    def test_empty_message(self, clf, make_message):
        assert clf.classify(make_message()).verdict == Verdict.AMBIGUOUS
