from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from infra.kafka_topics import FRAUD_ASSESSMENTS_TOPIC, MANUAL_REVIEW_TOPIC
from inspection.config import ScoringPolicy
from inspection.data_models import FraudAssessment, Inspection, VehicleHistoryRecord, utcnow
from inspection.errors import NotConfigured, NotFound, ProviderError, ProviderUnavailable
from inspection.fraud import ScoringInputs, compute_fraud_assessment
from inspection.vin import is_valid_vin, normalize_vin
from inspection_service.geocoding import ZipGeocoder
from inspection_service.history import VehicleHistoryService
from inspection_service.messaging import KafkaBus
from inspection_service.storage import InspectionStore

logger = logging.getLogger(__name__)


class FraudScoringService:
    """Gather scoring inputs, run the engine and persist the result.

    History and geocoding are best effort: a missing record only means the
    signals depending on it cannot trigger. The stored assessment is replaced
    on every run under the inspection's write lock.
    """

    def __init__(
        self,
        store: InspectionStore,
        history: VehicleHistoryService,
        geocoder: ZipGeocoder,
        bus: KafkaBus,
        policy: ScoringPolicy = ScoringPolicy(),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.history = history
        self.geocoder = geocoder
        self.bus = bus
        self.policy = policy
        self.clock = clock

    async def _history_for(self, inspection: Inspection) -> VehicleHistoryRecord | None:
        vin = normalize_vin(inspection.vin)
        if not is_valid_vin(vin):
            return None
        try:
            return await self.history.get(vin)
        except (NotConfigured, ProviderError, ProviderUnavailable) as exc:
            logger.warning("History unavailable for %s: %s", vin, exc.message)
            return None

    async def score(self, inspection_id: str) -> FraudAssessment:
        inspection = await self.store.get_inspection(inspection_id)
        if inspection is None:
            raise NotFound("Inspection not found")

        uploads = await self.store.list_uploads(inspection_id)
        inputs = ScoringInputs(
            inspection=inspection,
            uploads=uploads,
            history=await self._history_for(inspection),
            seller_location=await self.geocoder.locate(inspection.seller_zip),
        )
        now = self.clock()
        assessment = compute_fraud_assessment(inputs, self.policy, computed_at=now)
        updated = await self.store.save_assessment(inspection_id, assessment, now)

        logger.info(
            "Fraud assessment computed",
            extra={
                "extra_data": {
                    "inspection_id": inspection_id,
                    "score": assessment.score,
                    "level": assessment.level,
                    "auto_flag": assessment.auto_flag,
                }
            },
        )
        await self.bus.publish(FRAUD_ASSESSMENTS_TOPIC, assessment.to_dict(), key=inspection_id)
        if assessment.auto_flag:
            await self.bus.publish(
                MANUAL_REVIEW_TOPIC,
                {
                    "inspection_id": inspection_id,
                    "status": updated.status,
                    "score": assessment.score,
                    "flags": list(assessment.flags),
                },
                key=inspection_id,
            )
        return assessment
