INSPECTION_UPLOADS_TOPIC = "inspection_uploads"
FRAUD_ASSESSMENTS_TOPIC = "fraud_assessments"
MANUAL_REVIEW_TOPIC = "manual_review_queue"

TOPICS = {
    INSPECTION_UPLOADS_TOPIC: {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 604800000,
    },
    FRAUD_ASSESSMENTS_TOPIC: {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 2592000000,
    },
    MANUAL_REVIEW_TOPIC: {
        "partitions": 3,
        "replication_factor": 3,
        "retention_ms": 7776000000,
    },
}
