"""Map raw provider items to :class:`IndexedDoc` for each content source."""

from __future__ import annotations

from typing import Any, Callable

from portal_search.models import IndexedDoc

Indexer = Callable[[list[dict[str, Any]]], list[IndexedDoc]]

_VIEW_URL = "backstage.io/view-url"
_EDIT_URL = "backstage.io/edit-url"


def _tags(value: Any) -> list[str]:  # noqa: ANN401
    if not isinstance(value, list):
        return []
    return [str(t) for t in value]


def catalog_doc(entity: dict[str, Any]) -> IndexedDoc:
    """Flatten a catalog entity (``kind``/``metadata``/``spec``) into a document."""
    metadata = entity.get("metadata") or {}
    spec = entity.get("spec") or {}
    annotations = metadata.get("annotations") or {}
    return IndexedDoc(
        id=metadata.get("uid") or metadata.get("name"),
        title=metadata.get("title") or metadata.get("name") or "untitled",
        text=metadata.get("description") or spec.get("description") or "",
        url=annotations.get(_VIEW_URL) or annotations.get(_EDIT_URL),
        tags=_tags(metadata.get("tags")),
        kind=entity.get("kind"),
        namespace=metadata.get("namespace") or "default",
        owner=metadata.get("owner") or spec.get("owner"),
        system=spec.get("system"),
        lifecycle=spec.get("lifecycle"),
    )


def techdocs_doc(page: dict[str, Any]) -> IndexedDoc:
    return IndexedDoc(
        title=page.get("title") or "untitled",
        url=page.get("url"),
        text=page.get("text"),
        tags=_tags(page.get("tags")),
    )


def api_doc(api: dict[str, Any]) -> IndexedDoc:
    return IndexedDoc(
        title=api.get("name") or "untitled",
        text=api.get("description"),
        url=api.get("url"),
        tags=_tags(api.get("tags")),
        kind="API",
    )


def catalog_docs(items: list[dict[str, Any]]) -> list[IndexedDoc]:
    return [catalog_doc(e) for e in items]


def techdocs_docs(items: list[dict[str, Any]]) -> list[IndexedDoc]:
    return [techdocs_doc(p) for p in items]


def api_docs(items: list[dict[str, Any]]) -> list[IndexedDoc]:
    return [api_doc(a) for a in items]


INDEXERS: dict[str, Indexer] = {
    "catalog": catalog_docs,
    "techdocs": techdocs_docs,
    "apis": api_docs,
}
