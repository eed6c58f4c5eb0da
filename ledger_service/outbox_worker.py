import logging
import time
from sqlalchemy import select, update
from confluent_kafka import KafkaException
from common.kafka import get_producer
from ledger_service.db import get_session_factory
from ledger_service.models import Outbox

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
BATCH_SIZE = 50

class OutboxRelay:
    """Publishes ledger events written alongside entries to Kafka."""

    def __init__(self, session_factory=None, producer=None):
        self.session_factory = session_factory or get_session_factory()
        self.producer = producer

    def run_once(self) -> int:
        producer = self.producer or get_producer()
        sent = 0
        with self.session_factory() as db:
            rows = db.execute(
                select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(BATCH_SIZE)
            ).scalars().all()
            for row in rows:
                try:
                    producer.produce(row.topic, value=row.payload.encode("utf-8"))
                    producer.flush()
                    db.execute(update(Outbox).where(Outbox.id == row.id).values(status="sent"))
                    sent += 1
                except KafkaException as e:
                    logger.error(f"❌ Failed to publish outbox row {row.id}: {e}")
                    db.execute(update(Outbox).where(Outbox.id == row.id).values(status="failed"))
                db.commit()
        return sent

    def run(self):
        logger.info("🚀 Outbox relay started")
        while True:
            try:
                self.run_once()
            except Exception:
                logger.exception("Outbox relay iteration failed")
            time.sleep(POLL_INTERVAL)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    OutboxRelay().run()
