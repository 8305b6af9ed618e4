"""
Report clustering for Community Era.

Nearby reports of the same category are grouped into one-level clusters: the
first report at a spot is the root, later reports within the proximity box
point at it through `parentReport`. Cluster totals are never stored; they are
computed when roots are listed.
"""

import logging
import os
from typing import Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from schemas import Status

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [Status.open.value, Status.in_progress.value]

CHILD_ORDER = [("createdAt", ASCENDING), ("_id", ASCENDING)]


def _get_env_float(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default


class ClusterError(Exception):
    pass


class NestedClusterError(ClusterError):
    """Raised when a report would be attached under another child."""


class Threshold(BaseModel):
    """Half-widths in degrees of the per-axis bounding box."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


# ~100m at mid-latitudes, used when a report is created
MATCH_THRESHOLD = Threshold(
    lat=_get_env_float("CLUSTER_MATCH_DEGREES", 0.001),
    lng=_get_env_float("CLUSTER_MATCH_DEGREES", 0.001),
)
# ~200m, used by the maintenance sweep
SWEEP_THRESHOLD = Threshold(
    lat=_get_env_float("CLUSTER_SWEEP_DEGREES", 0.002),
    lng=_get_env_float("CLUSTER_SWEEP_DEGREES", 0.002),
)


class SweepResult(BaseModel):
    merged_count: int = 0
    roots_scanned: int = 0
    failed_count: int = 0
    interrupted: bool = False


def _candidate_filter(category: str, lat: float, lng: float, threshold: Threshold, exclude_id=None) -> dict:
    query = {
        "category": category,
        "status": {"$in": ACTIVE_STATUSES},
        "parentReport": None,
        "location.coordinates.lat": {"$gt": lat - threshold.lat, "$lt": lat + threshold.lat},
        "location.coordinates.lng": {"$gt": lng - threshold.lng, "$lt": lng + threshold.lng},
    }
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return query


def find_match(reports, category: str, coordinates: dict, exclude_id=None, threshold: Threshold = MATCH_THRESHOLD) -> Optional[dict]:
    """Return the oldest active root near `coordinates` in `category`, or None.

    Only roots are searched, so a child is never returned as a parent.
    """
    query = _candidate_filter(category, coordinates["lat"], coordinates["lng"], threshold, exclude_id)
    return reports.find_one(query, sort=CHILD_ORDER)


def attach_child(child: dict, parent: dict) -> None:
    """Point `child` at `parent`, refusing to nest below another child."""
    if parent.get("parentReport") is not None:
        raise NestedClusterError(f"Report {parent['_id']} is itself a child of {parent['parentReport']}")
    if child.get("_id") is not None and child["_id"] == parent["_id"]:
        raise ClusterError("A report cannot be its own parent")
    child["parentReport"] = parent["_id"]


def attach_on_create(reports, doc: dict) -> dict:
    """Decide root-or-child for a new report and insert it.

    Database errors from the match query propagate: the report is not saved
    with a guessed parent.
    """
    doc["parentReport"] = None
    # resolved and closed reports never join a cluster
    match = None
    if doc.get("status", Status.open.value) in ACTIVE_STATUSES:
        match = find_match(reports, doc["category"], doc["location"]["coordinates"])
    if match is not None:
        attach_child(doc, match)
        logger.info("Attaching new %s report to cluster %s", doc["category"], match["_id"])

    reports.insert_one(doc)
    return doc


def _degraded(root: dict) -> dict:
    out = dict(root)
    out["clusterCount"] = 1
    out["totalVotes"] = root.get("votes", 0)
    out["allImages"] = list(root.get("images") or [])
    return out


def enrich_for_listing(reports, roots: List[dict]) -> List[dict]:
    """Attach clusterCount, totalVotes and allImages to each root.

    Children of the whole page are fetched in one query. Stored documents are
    not modified. If the lookup fails every root is returned without cluster
    info rather than failing the listing.
    """
    if not roots:
        return []

    root_ids = [r["_id"] for r in roots]
    try:
        children = list(reports.find({"parentReport": {"$in": root_ids}}, sort=CHILD_ORDER))
    except PyMongoError as e:
        logger.warning("Cluster lookup failed for %d reports: %s", len(roots), e)
        return [_degraded(r) for r in roots]

    by_parent: Dict[ObjectId, List[dict]] = {}
    for child in children:
        by_parent.setdefault(child["parentReport"], []).append(child)

    enriched = []
    for root in roots:
        kids = by_parent.get(root["_id"], [])
        out = dict(root)
        out["clusterCount"] = 1 + len(kids)
        out["totalVotes"] = root.get("votes", 0) + sum(k.get("votes", 0) for k in kids)
        images = list(root.get("images") or [])
        for k in kids:
            images.extend(k.get("images") or [])
        out["allImages"] = images
        enriched.append(out)
    return enriched


def get_cluster(reports, report_id) -> Optional[dict]:
    """Return {"root": ..., "children": [...]} for the cluster containing report_id.

    A child whose parent no longer exists is returned as its own root.
    """
    report = reports.find_one({"_id": report_id})
    if report is None:
        return None

    root = report
    parent_id = report.get("parentReport")
    if parent_id is not None:
        parent = reports.find_one({"_id": parent_id})
        if parent is not None:
            root = parent
        else:
            logger.warning("Report %s points at missing parent %s", report_id, parent_id)
            return {"root": report, "children": []}

    children = list(reports.find({"parentReport": root["_id"]}, sort=CHILD_ORDER))
    return {"root": root, "children": children}


def _merge_into(reports, child: dict, parent: dict) -> bool:
    """Attach root `child` under `parent`, moving child's own children along.

    Children are moved first so a failure part-way leaves at most a smaller
    cluster, never a two-level one.
    """
    reports.update_many({"parentReport": child["_id"]}, {"$set": {"parentReport": parent["_id"]}})
    res = reports.update_one(
        {"_id": child["_id"], "parentReport": None},
        {"$set": {"parentReport": parent["_id"]}},
    )
    return bool(res.modified_count)


def run_maintenance_sweep(reports, threshold: Threshold = SWEEP_THRESHOLD, stop_event=None) -> SweepResult:
    """Merge active roots that sit within `threshold` of an older root.

    Roots are visited oldest first; each one claims every still-root neighbour
    of the same category. A report claimed during this sweep is never used as a
    parent later in the same sweep, and a report that already acted as a parent
    is never claimed. Writes are conditional on the child still being a root,
    so re-runs and overlapping runs only repeat no-ops.

    `stop_event` (a threading.Event) is checked between roots; a stopped sweep
    leaves a valid partial state.
    """
    result = SweepResult()
    roots = list(reports.find(
        {"status": {"$in": ACTIVE_STATUSES}, "parentReport": None},
        sort=CHILD_ORDER,
    ))
    reassigned = set()
    anchors = set()

    for parent in roots:
        if stop_event is not None and stop_event.is_set():
            result.interrupted = True
            logger.info("Cluster sweep interrupted after %d roots", result.roots_scanned)
            break
        if parent["_id"] in reassigned:
            continue
        result.roots_scanned += 1
        anchors.add(parent["_id"])

        coords = parent["location"]["coordinates"]
        query = _candidate_filter(parent["category"], coords["lat"], coords["lng"], threshold, parent["_id"])
        for child in list(reports.find(query, sort=CHILD_ORDER)):
            if child["_id"] in anchors:
                continue
            try:
                merged = _merge_into(reports, child, parent)
            except PyMongoError as e:
                result.failed_count += 1
                logger.warning("Could not attach report %s to %s: %s", child["_id"], parent["_id"], e)
                continue
            if merged:
                result.merged_count += 1
                reassigned.add(child["_id"])

    logger.info(
        "Cluster sweep finished: merged=%d scanned=%d failed=%d",
        result.merged_count, result.roots_scanned, result.failed_count,
    )
    return result
