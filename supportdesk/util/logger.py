import logging, json, sys

from supportdesk import settings


class JsonFormatter(logging.Formatter):
    def format(self, record):
        d = {
            "lvl": record.levelname,
            "msg": record.getMessage(),
            "name": record.name,
        }
        if record.args and isinstance(record.args, dict):
            d.update(record.args)
        if record.exc_info:
            d["exc"] = self.formatException(record.exc_info)
        return json.dumps(d, ensure_ascii=False, default=str)


def get_logger(name="supportdesk"):
    log = logging.getLogger(name)
    if not log.handlers:
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(JsonFormatter())
        log.addHandler(h)
        level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
        log.setLevel(level)
    return log
