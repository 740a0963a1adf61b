"""
WMS GetMap locator variants used by the recovery ladder.

Every variant is derived from the original locator alone, and every
variant keeps the parameters that identify the tile: the layer, the
spatial selectors (bbox, crs/srs, width, height) and the temporal
selectors (time, elevation). WMS parameter names are case-insensitive.
"""

import time
from typing import Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

Params = List[Tuple[str, str]]

CONSERVATIVE_VERSION = "1.1.1"
SIMPLE_FORMAT = "image/png"
IN_IMAGE_EXCEPTIONS = "INIMAGE"

IDENTITY_PARAMS = ("layers", "bbox", "crs", "srs", "width", "height", "time", "elevation")

MINIMAL_PARAMS = frozenset(
    ("service", "request", "version", "format", "transparent") + IDENTITY_PARAMS
)

# Styling extensions (ncWMS and friends) that some upstreams choke on
STYLING_PARAMS = ("styles", "colorscalerange", "abovemaxcolor", "belowmincolor", "numcolorbands")


def is_fetchable(locator: Optional[str]) -> bool:
    """Inline data: URIs and empty locators cannot be refetched."""
    return bool(locator) and not locator.startswith("data:")


def _split(locator: str):
    parts = urlsplit(locator)
    return parts, parse_qsl(parts.query, keep_blank_values=True)


def _join(parts, params: Params) -> str:
    return urlunsplit(parts._replace(query=urlencode(params)))


def _get(params: Params, key: str) -> Optional[str]:
    for name, value in params:
        if name.lower() == key:
            return value
    return None


def _set(params: Params, key: str, value: str) -> Params:
    """Replace the first case-insensitive match in place, drop the rest."""
    result: Params = []
    replaced = False
    for name, old in params:
        if name.lower() == key.lower():
            if not replaced:
                result.append((name, value))
                replaced = True
            continue
        result.append((name, old))
    if not replaced:
        result.append((key, value))
    return result


def _delete(params: Params, keys: Iterable[str]) -> Params:
    drop = {k.lower() for k in keys}
    return [(name, value) for name, value in params if name.lower() not in drop]


# EPSG order is latitude first; WMS 1.3.0 honours it, 1.1.1 always sends lon,lat
LAT_LON_CRS = frozenset(("EPSG:4326", "EPSG:4258", "EPSG:4269"))


def _swap_bbox_axes(bbox: str) -> str:
    values = bbox.split(",")
    if len(values) != 4:
        return bbox
    south, west, north, east = values
    return ",".join((west, south, east, north))


def _pin_version(params: Params) -> Params:
    # WMS 1.1.1 spells the reference system SRS
    crs = _get(params, "crs")
    if crs is not None and _get(params, "srs") is None:
        params = params + [("srs", crs)]

    version = _get(params, "version") or ""
    bbox = _get(params, "bbox")
    if version.startswith("1.3") and bbox and (crs or "").upper() in LAT_LON_CRS:
        params = _set(params, "bbox", _swap_bbox_axes(bbox))
    return _set(params, "version", CONSERVATIVE_VERSION)


def with_cache_buster(locator: str, attempt: int, now_ms: Optional[int] = None) -> str:
    """Original locator plus a cache-defeating token."""
    parts, params = _split(locator)
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    params = _set(params, "_retry", str(attempt))
    params = _set(params, "_t", str(stamp))
    return _join(parts, params)


def simplified_format(locator: str) -> str:
    """Plain PNG output with server errors rendered into the image."""
    parts, params = _split(locator)
    params = _set(params, "format", SIMPLE_FORMAT)
    params = _set(params, "exceptions", IN_IMAGE_EXCEPTIONS)
    return _join(parts, params)


def conservative_protocol(locator: str) -> str:
    """No styling extensions, protocol version pinned to 1.1.1."""
    parts, params = _split(locator)
    params = _delete(params, STYLING_PARAMS)
    params = _set(params, "format", SIMPLE_FORMAT)
    return _join(parts, _pin_version(params))


def minimal_parameters(locator: str) -> str:
    """Only the parameters needed to address the tile."""
    parts, params = _split(locator)
    params = [(name, value) for name, value in params if name.lower() in MINIMAL_PARAMS]
    params = _set(params, "service", _get(params, "service") or "WMS")
    params = _set(params, "request", _get(params, "request") or "GetMap")
    params = _set(params, "format", SIMPLE_FORMAT)
    params = _set(params, "transparent", _get(params, "transparent") or "true")
    return _join(parts, _pin_version(params))


def alternate_endpoint(locator: str, alternate_base_url: Optional[str] = None) -> str:
    """
    Same request against an alternate upstream path.

    With no alternate base configured the original host and path are kept
    and only the styling extensions are stripped.
    """
    parts, params = _split(locator)
    params = _delete(params, STYLING_PARAMS)
    params = _set(params, "format", SIMPLE_FORMAT)
    params = _pin_version(params)

    if alternate_base_url:
        base = urlsplit(alternate_base_url)
        parts = parts._replace(scheme=base.scheme, netloc=base.netloc, path=base.path)
    return _join(parts, params)


def retry_locator(original: str, attempt: int, now_ms: Optional[int] = None) -> str:
    """
    Locator for a given same-transport retry attempt.

    1: cache buster only
    2: simplified format, errors in image
    3: styling stripped, version pinned
    4+: minimal parameter set
    """
    if attempt <= 1:
        variant = original
    elif attempt == 2:
        variant = simplified_format(original)
    elif attempt == 3:
        variant = conservative_protocol(original)
    else:
        variant = minimal_parameters(original)
    return with_cache_buster(variant, attempt, now_ms=now_ms)


def identity_of(locator: str) -> dict:
    """Identity parameters of a locator, lower-cased keys."""
    _, params = _split(locator)
    return {
        name.lower(): value for name, value in params if name.lower() in IDENTITY_PARAMS
    }
