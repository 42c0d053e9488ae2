from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from services import config
from services.json_logger import get_json_logger
from ai_services.categorization import MerchantDirectory
from ai_services.classifier import Classifier
from ai_services.training import build_training_batch
from detection.signature_engine import SignatureEngine
from feedback.statistics import compute_statistics
from schemas.records import Feedback, FeedbackCorrections, Transaction
from storage.store import Store


logger = get_json_logger("statement_parser.feedback")


class TransactionNotFoundError(LookupError):
    def __init__(self, transaction_hash: str) -> None:
        super().__init__(f"transaction {transaction_hash} not found")
        self.transaction_hash = transaction_hash


@dataclass
class FeedbackOutcome:
    feedback_id: str
    transaction_hash: str
    pattern_accuracy: Optional[float] = None
    retrained: bool = False
    retrain_results: Dict[str, bool] = field(default_factory=dict)


class LearningLoop:
    """
    Turns user corrections into model updates.

    Every feedback entry is appended to the store, pushed into the classifier's
    training windows and applied to the accuracy of the document's learned
    pattern. Each `retrain_every`-th entry triggers a full retrain over the
    most recent `lookback` entries.
    """

    def __init__(
        self,
        store: Store,
        classifier: Classifier,
        signature_engine: SignatureEngine,
        merchant_directory: Optional[MerchantDirectory] = None,
        retrain_every: Optional[int] = None,
        lookback: Optional[int] = None,
    ) -> None:
        self.store = store
        self.classifier = classifier
        self.signature_engine = signature_engine
        self.merchant_directory = merchant_directory
        self.retrain_every = max(1, int(retrain_every or config.RETRAIN_EVERY_N_FEEDBACK))
        self.lookback = int(lookback or config.RETRAIN_FEEDBACK_LOOKBACK)

    async def learn_from_feedback(self, transaction_hash: str, corrections: FeedbackCorrections) -> FeedbackOutcome:
        record = await self.store.get("transactions", transaction_hash)
        if record is None:
            raise TransactionNotFoundError(transaction_hash)
        original = Transaction.from_record(record)

        entry = Feedback(
            transaction_hash=transaction_hash,
            original=record,
            corrections=corrections,
            signature_hash=original.signature_hash,
        )
        feedback_id = await self.store.put("feedback", entry.to_record())

        if corrections.merchant:
            await self.classifier.update_merchant(original.description, corrections.merchant, original.amount, original.date)
            if self.merchant_directory is not None:
                await self.merchant_directory.learn(corrections.merchant, corrections.category, alias=original.description)
        if corrections.category:
            merchant_conf = 1.0 if corrections.merchant else original.merchant_confidence
            await self.classifier.update_category(
                original.description, corrections.category, original.amount, original.date, merchant_conf
            )

        outcome = FeedbackOutcome(feedback_id=feedback_id, transaction_hash=transaction_hash)
        if original.signature_hash:
            was_correct = corrections.is_correct if corrections.is_correct is not None else not corrections.has_corrections
            outcome.pattern_accuracy = await self.signature_engine.update_pattern_accuracy(original.signature_hash, was_correct)

        total = await self.store.count("feedback")
        logger.info(
            "feedback_recorded",
            extra={
                "extra": {
                    "transaction_hash": transaction_hash,
                    "merchant_corrected": bool(corrections.merchant),
                    "category_corrected": bool(corrections.category),
                    "feedback_total": total,
                }
            },
        )
        if total % self.retrain_every == 0:
            outcome.retrain_results = await self.retrain_models()
            outcome.retrained = True
        return outcome

    async def retrain_models(self) -> Dict[str, bool]:
        batch = await build_training_batch(self.store, self.lookback)
        results = await self.classifier.retrain(batch)
        await compute_statistics(self.store)
        return results
