__all__ = ("ConfigKeys",)


class ConfigKeys:
    SLACK_APP_TOKEN = "slack.app_token"
    SLACK_BOT_TOKEN = "slack.bot_token"
    SLACK_DEFAULT_USER_ID = "slack.default_user_id"
    SLACK_RESOLVE_NAMES = "slack.resolve_names"
    DEVICE_HOST = "device.host"
    DEVICE_PORT = "device.port"
    HTTP_ENABLED = "http.enabled"
    HTTP_HOST = "http.host"
    HTTP_PORT = "http.port"
    STORE_RETENTION = "store.retention"
    STORE_MAX_MESSAGES = "store.max_messages"
    LOG_PATH = "log.path"
    LOG_LEVEL = "log.level"
    LOG_FULL_TEXT = "log.full_text"
    LOG_REDACT_TEXT = "log.redact_text"
    LOG_DUMP_EVENTS = "log.dump_events"
