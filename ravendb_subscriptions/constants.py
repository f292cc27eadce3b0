int_max = 0x7FFFFFF
json_serialize_method_name = "to_json"


class Documents:
    class Metadata:
        COLLECTION = "@collection"
        PROJECTION = "@projection"
        METADATA = "@metadata"
        KEY = "@metadata"
        ID = "@id"
        FLAGS = "@flags"
        ATTACHMENTS = "@attachments"
        LAST_MODIFIED = "@last-modified"
        CHANGE_VECTOR = "@change-vector"
        ALL_DOCUMENTS_COLLECTION = "@all_docs"
        EMPTY_COLLECTION = "@empty"
        RAVEN_PYTHON_TYPE = "Raven-Python-Type"


class Subscriptions:
    # bounded wait for a Confirm after sending an Ack
    DEFAULT_CONNECTION_TIMEOUT_SECONDS = 60
    DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 3
    DEFAULT_HEARTBEAT_GRACE_SECONDS = 27
    DEFAULT_TIME_TO_WAIT_BEFORE_CONNECTION_RETRY_SECONDS = 5
    DEFAULT_MAX_ERRONEOUS_PERIOD_SECONDS = 5 * 60
    DEFAULT_MAX_DOCS_PER_BATCH = 4096
    DEFAULT_BUFFER_SIZE = 32 * 1024


class Headers:
    REQUEST_TIME = "Raven-Request-Time"
    REFRESH_TOPOLOGY = "Refresh-Topology"
    TOPOLOGY_ETAG = "Topology-Etag"
    CLIENT_VERSION = "Raven-Client-Version"
    SERVER_VERSION = "Raven-Server-Version"
    ETAG = "ETag"
    CONTENT_TYPE = "Content-Type"
