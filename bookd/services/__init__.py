"""
Service layer.

The builders below wire services from the current app's config; routes,
CLI commands and scheduler jobs all go through them.
"""
from datetime import timedelta

from flask import current_app

from .fees import FeeSchedule, FeeBreakdown, compute_fee
from .ledger import EarningsLedger, LedgerPolicy, AccrualResult
from .gateway import PayPalGateway, TransferReceipt, BatchStatus
from .payouts import PayoutOrchestrator, PayoutResult, FundingOutcome
from .webhooks import WebhookReconciler, WebhookOutcome, parse_event
from .reconciliation import PayoutReconciliation, ReconciliationSummary
from .early_pay import EarlyPayService


def get_gateway():
    """The app's PayPal client, created once and cached on the app."""
    gateway = current_app.extensions.get('bookd_gateway')
    if gateway is None:
        gateway = PayPalGateway.from_config(current_app.config)
        current_app.extensions['bookd_gateway'] = gateway
    return gateway


def build_fee_schedule():
    return FeeSchedule.from_config(current_app.config)


def build_ledger():
    return EarningsLedger(policy=LedgerPolicy.from_config(current_app.config))


def build_early_pay_service():
    return EarlyPayService(schedule=build_fee_schedule())


def build_orchestrator():
    config = current_app.config
    return PayoutOrchestrator(
        gateway=get_gateway(),
        ledger=build_ledger(),
        currency=config['PAYOUT_CURRENCY'],
        note=config.get('PAYOUT_NOTE'),
        email_subject=config.get('PAYOUT_EMAIL_SUBJECT'),
        email_message=config.get('PAYOUT_EMAIL_MESSAGE'),
    )


def build_reconciler(orchestrator=None):
    return WebhookReconciler(orchestrator or build_orchestrator())


def run_reconciliation():
    orchestrator = build_orchestrator()
    job = PayoutReconciliation(orchestrator, build_reconciler(orchestrator))
    return job.reconcile_payouts(
        older_than=timedelta(minutes=current_app.config['PAYOUT_STUCK_AFTER_MINUTES'])
    )


__all__ = [
    'FeeSchedule',
    'FeeBreakdown',
    'compute_fee',
    'EarningsLedger',
    'LedgerPolicy',
    'AccrualResult',
    'PayPalGateway',
    'TransferReceipt',
    'BatchStatus',
    'PayoutOrchestrator',
    'PayoutResult',
    'FundingOutcome',
    'WebhookReconciler',
    'WebhookOutcome',
    'parse_event',
    'PayoutReconciliation',
    'ReconciliationSummary',
    'EarlyPayService',
    'get_gateway',
    'build_fee_schedule',
    'build_ledger',
    'build_early_pay_service',
    'build_orchestrator',
    'build_reconciler',
    'run_reconciliation',
]
