"""Merge monthly usage totals between two config_happ_pwrusage.xml documents.

Each <monthInfo> child of the document root carries at least <year> (years
since 1900), <month> (0-based) and <type>. Entries of the old unit are copied
into the new document; where both have the same (year, month, type) the old
entry wins unless its month starts at or after the import cutoff.
"""

import copy
import dataclasses
import time
from typing import Optional
from xml.etree import ElementTree

from rra_codec import atomic_write_bytes

MONTH_INFO_TAG = "monthInfo"


@dataclasses.dataclass
class PwrusageMergeSummary:
    overwritten: int = 0
    kept: int = 0
    added: int = 0
    kept_new_only: int = 0

    @property
    def total(self) -> int:
        return self.overwritten + self.kept + self.added + self.kept_new_only


def _month_key(element: ElementTree.Element) -> tuple[str, str, str]:
    return (
        (element.findtext("year") or "").strip(),
        (element.findtext("month") or "").strip(),
        (element.findtext("type") or "").strip(),
    )


def _describe(key: tuple[str, str, str]) -> str:
    year, month, month_type = key
    try:
        return f"year: {int(year) + 1900}, month: {int(month) + 1:2d}, type: {month_type}"
    except ValueError:
        return f"year: {year!r}, month: {month!r}, type: {month_type}"


def month_start_timestamp(year_text: str, month_text: str) -> Optional[int]:
    try:
        year = int(year_text)
        month = int(month_text)
    except ValueError:
        return None
    # mktime normalizes month overflow into the year
    return int(time.mktime((year + 1900, month + 1, 1, 0, 0, 0, 0, 0, -1)))


def merge_month_infos(
    old_root: ElementTree.Element,
    new_root: ElementTree.Element,
    cutoff: Optional[int] = None,
    verbose: int = 0,
) -> tuple[list[ElementTree.Element], PwrusageMergeSummary]:
    summary = PwrusageMergeSummary()
    new_by_key: dict[tuple[str, str, str], ElementTree.Element] = {}
    for element in new_root.findall(MONTH_INFO_TAG):
        new_by_key.setdefault(_month_key(element), element)

    merged: list[ElementTree.Element] = []
    used_keys: set[tuple[str, str, str]] = set()
    for old_element in old_root.findall(MONTH_INFO_TAG):
        key = _month_key(old_element)
        if verbose:
            print(f"Copying      config_happ_pwrusage.xml (old): {_describe(key)}")
        new_element = new_by_key.get(key)
        if new_element is None:
            print(f"Writing into config_happ_pwrusage.xml (new): {_describe(key)}")
            merged.append(copy.deepcopy(old_element))
            summary.added += 1
            continue
        used_keys.add(key)
        started = month_start_timestamp(key[0], key[1])
        if cutoff is None or (started is not None and cutoff > started):
            print(f"Overwriting  config_happ_pwrusage.xml (new): {_describe(key)}")
            merged.append(copy.deepcopy(old_element))
            summary.overwritten += 1
        else:
            print(f"Keeping      config_happ_pwrusage.xml (new): {_describe(key)}")
            merged.append(new_element)
            summary.kept += 1

    for element in new_root.findall(MONTH_INFO_TAG):
        key = _month_key(element)
        if key in used_keys:
            continue
        if verbose:
            print(f"Keeping      config_happ_pwrusage.xml (new only): {_describe(key)}")
        merged.append(element)
        summary.kept_new_only += 1
    return merged, summary


def replace_month_infos(root: ElementTree.Element, month_infos: list[ElementTree.Element]) -> None:
    children = list(root)
    insert_at = len(children)
    for idx, child in enumerate(children):
        if child.tag == MONTH_INFO_TAG:
            insert_at = idx
            break
    for child in children:
        if child.tag == MONTH_INFO_TAG:
            root.remove(child)
    for offset, element in enumerate(month_infos):
        root.insert(insert_at + offset, element)


def merge_pwrusage(old_path: str, new_path: str, cutoff: Optional[int] = None, verbose: int = 0) -> PwrusageMergeSummary:
    print(f"Copying monthly data from {old_path} into {new_path}")
    try:
        old_tree = ElementTree.parse(old_path)
        new_tree = ElementTree.parse(new_path)
    except ElementTree.ParseError as exc:
        raise ValueError(f"Unable to parse monthly usage document: {exc}") from exc

    new_root = new_tree.getroot()
    merged, summary = merge_month_infos(old_tree.getroot(), new_root, cutoff=cutoff, verbose=verbose)
    replace_month_infos(new_root, merged)
    ElementTree.indent(new_tree, space="  ")
    text = ElementTree.tostring(new_root, encoding="unicode") + "\n"
    atomic_write_bytes(new_path, text.encode("utf-8"), prefix=".pwrusage_")
    return summary
