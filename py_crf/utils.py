import logging
import sys
import time

_T0 = time.perf_counter()


def _record_factory(default_factory):
    # https://stackoverflow.com/questions/63056270/python-logging-time-since-start-in-seconds
    def record_factory(*args, **kwargs):
        record = default_factory(*args, **kwargs)
        record.uptime = time.perf_counter() - _T0
        return record

    record_factory.adds_uptime = True
    return record_factory


def create_logger(tag: str, verbose: bool = True) -> logging.Logger:
    default_fields = logging.getLogRecordFactory()
    if not getattr(default_fields, "adds_uptime", False):
        logging.setLogRecordFactory(_record_factory(default_fields))
    logger = logging.getLogger(tag)
    logger.setLevel(logging.DEBUG)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        formatter = logging.Formatter(f"[%(uptime)6.1fs][{tag}] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def read_tagged_sentences(path: str, encoding: str = "utf-8") -> list[list[tuple[str, str]]]:
    """Reads one `token TAG` pair per line, with blank lines between sentences."""
    sentences, current = [], []
    with open(path, encoding=encoding) as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                if current:
                    sentences.append(current)
                    current = []
                continue
            parts = line.split()
            if len(parts) < 2:
                raise ValueError(f"{path}:{line_no}: expected 'token TAG', got {line!r}")
            current.append((" ".join(parts[:-1]), parts[-1]))
    if current:
        sentences.append(current)
    return sentences
