"""Utility functions for parsing provider responses."""
import json
import logging
import re

import json_repair

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def _preprocess_response(response: str) -> str:
    """Strip markdown fences and preamble; return content from the first '{' or '['."""
    response = (response or "").strip()
    response = _FENCE_RE.sub("", response).strip()
    starts = [i for i in (response.find("{"), response.find("[")) if i >= 0]
    if starts:
        response = response[min(starts):]
    return response


def _try_close_truncated_json(s: str) -> str:
    """If string looks truncated (ends with comma or incomplete key), append closing brackets."""
    s = s.rstrip()
    if not s or s[-1] in "}]":
        return s
    # Ended mid-key (opening quote only): close key with null, then object/array/root
    if s[-1] == '"':
        return s + '": null}]}'
    # Ended mid-value after comma: close value, then object/array/root
    if s[-1] == ",":
        return s + " null}]}"
    # Ended after colon: add null and close
    if s[-1] == ":":
        return s + " null}]}"
    return s


def _usable(obj) -> bool:
    return isinstance(obj, (dict, list))


def iter_json_values(response: str):
    """Yield each JSON object or array that decodes cleanly at a '{' or '[' offset, in order."""
    text = response or ""
    decoder = json.JSONDecoder()
    for i, ch in enumerate(text):
        if ch not in "{[":
            continue
        try:
            obj, _ = decoder.raw_decode(text, i)
        except json.JSONDecodeError:
            continue
        yield obj


def parse_json_response(response: str) -> dict | list:
    """Parse JSON from a provider response, handling fences, preamble, and trailing text.

    Tries: 1) strict parse, 2) truncate at last '}', 3) json_repair on full,
    4) close truncated and repair. Raises ``json.JSONDecodeError`` (or
    ``ValueError``) when nothing usable is found.
    """
    preprocessed = _preprocess_response(response)
    first_error = None

    try:
        obj, _ = json.JSONDecoder().raw_decode(preprocessed)
        if _usable(obj):
            return obj
    except json.JSONDecodeError as e:
        first_error = e
        logger.warning("Failed to parse JSON: %s", e)
        logger.debug("Response was: %s", (response or "")[:500])

    # Recover partial JSON by truncating at the last complete '}'
    last_brace = preprocessed.rfind("}")
    if last_brace > 0:
        partial = preprocessed[: last_brace + 1]
        if partial.count("{") == partial.count("}"):
            try:
                obj, _ = json.JSONDecoder().raw_decode(partial)
                if _usable(obj):
                    logger.warning("Recovered partial JSON by truncating at last complete brace")
                    return obj
            except json.JSONDecodeError:
                pass

    if preprocessed:
        try:
            obj = json_repair.loads(preprocessed)
            if _usable(obj) and obj:
                logger.warning("Recovered JSON using json_repair after strict parse failed")
                return obj
        except Exception as repair_err:
            logger.debug("json_repair on full failed: %s", repair_err)

        closed = _try_close_truncated_json(preprocessed)
        if closed != preprocessed:
            try:
                obj = json_repair.loads(closed)
                if _usable(obj) and obj:
                    logger.warning("Recovered JSON by closing truncated string and using json_repair")
                    return obj
            except Exception as repair_err:
                logger.debug("json_repair on closed string failed: %s", repair_err)

    if first_error is not None:
        raise first_error
    raise ValueError("Failed to parse JSON")
