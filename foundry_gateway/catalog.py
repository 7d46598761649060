"""Model listings served to the UI, merged from the three CLI reports."""

from typing import Dict, List

from .control_plane import ControlPlaneClient
from .tables import ModelDescriptor, infer_device


def _by_model_id(catalog) -> Dict[str, ModelDescriptor]:
    return {v.model_id: v for entry in catalog for v in entry.variants}


def _row(alias: str, model_id: str, loaded: bool, info: Dict[str, ModelDescriptor]) -> dict:
    known = info.get(model_id)
    return {
        "alias": alias,
        "id": model_id,
        "loaded": loaded,
        "device": known.device if known else infer_device(model_id),
        "task": known.task if known else "",
        "fileSize": known.file_size if known else "",
        "license": known.license if known else "",
    }


async def local_models(control_plane: ControlPlaneClient) -> List[dict]:
    """
    Cached models (plus anything resident but not cached), with catalog
    details looked up by model id and a `loaded` flag.
    """
    info = _by_model_id(await control_plane.list_catalog())
    rows = [_row(e.alias, e.model_id, False, info) for e in await control_plane.list_cached()]

    for resident in await control_plane.list_resident():
        match = next((r for r in rows if r["id"] == resident.model_id), None)
        if match is not None:
            match["loaded"] = True
        else:
            rows.append(_row(resident.alias, resident.model_id, True, info))
    return rows


async def server_models(control_plane: ControlPlaneClient) -> List[dict]:
    """Every catalog variant, one row each, flagged when already downloaded."""
    catalog = await control_plane.list_catalog()
    cached_ids = {e.model_id for e in await control_plane.list_cached()}
    rows = []
    for entry in catalog:
        for variant in entry.variants:
            row = variant.to_dict()
            row["downloaded"] = variant.model_id in cached_ids
            rows.append(row)
    return rows
