"""Sheet profile registry (sheet-name pattern -> routing rule)."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


class SheetProfileError(RuntimeError):
    """Raised when sheet profile definitions are invalid."""


@dataclass(frozen=True)
class HeaderOverride:
    header_row_count: int | None = None
    header_start_row: int | None = None
    data_start_row: int | None = None

    def is_empty(self) -> bool:
        return (
            self.header_row_count is None
            and self.header_start_row is None
            and self.data_start_row is None
        )


@dataclass(frozen=True)
class SheetProfile:
    name_pattern: str
    target_collection: str = ""
    skip: bool = False
    hint: str | None = None
    header_row_count: int | None = None
    header_start_row: int | None = None
    data_start_row: int | None = None

    @property
    def header_override(self) -> HeaderOverride | None:
        override = HeaderOverride(
            header_row_count=self.header_row_count,
            header_start_row=self.header_start_row,
            data_start_row=self.data_start_row,
        )
        return None if override.is_empty() else override


class SheetProfileRegistry:
    """
    Ordered catalog of sheet profiles.

    Matching rule:
      - a profile matches when `name_pattern` is a substring of the sheet name
      - the longest matching pattern wins
      - equal-length matches are resolved by declaration order (first wins)
    """

    def __init__(self, profiles: list[SheetProfile]):
        self.profiles = list(profiles)
        indexed = list(enumerate(self.profiles))
        self._match_order = [
            profile
            for _, profile in sorted(indexed, key=lambda item: (-len(item[1].name_pattern), item[0]))
        ]

    @classmethod
    def from_yaml(cls, path: str | Path) -> "SheetProfileRegistry":
        profile_path = Path(path)
        if not profile_path.exists():
            raise SheetProfileError(f"시트 프로필 파일이 없습니다: {profile_path}")
        try:
            loaded = yaml.safe_load(profile_path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise SheetProfileError(f"시트 프로필 로드 실패: {profile_path}") from exc
        if not isinstance(loaded, dict) or not isinstance(loaded.get("profiles"), list):
            raise SheetProfileError(f"{profile_path}: 'profiles' 리스트가 필요합니다.")
        return cls([cls._profile_from_dict(item, profile_path) for item in loaded["profiles"]])

    @staticmethod
    def _profile_from_dict(item: Any, path: Path) -> SheetProfile:
        if not isinstance(item, dict):
            raise SheetProfileError(f"{path}: 프로필 항목은 dict여야 합니다: {item!r}")

        pattern = str(item.get("name_pattern") or "").strip()
        if not pattern:
            raise SheetProfileError(f"{path}: name_pattern이 비어 있습니다.")

        skip = bool(item.get("skip", False))
        target = str(item.get("target_collection") or "").strip()
        if not skip and not target:
            raise SheetProfileError(f"{path}: '{pattern}' 프로필에 target_collection이 없습니다.")

        row_values: dict[str, int | None] = {}
        for key in ("header_row_count", "header_start_row", "data_start_row"):
            value = item.get(key)
            if value is None:
                row_values[key] = None
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise SheetProfileError(f"{path}: '{pattern}.{key}'는 1 이상 정수여야 합니다.")
            row_values[key] = value

        hint = item.get("hint")
        return SheetProfile(
            name_pattern=pattern,
            target_collection=target,
            skip=skip,
            hint=str(hint).strip() if hint else None,
            **row_values,
        )

    def find_profile(self, sheet_name: str) -> SheetProfile | None:
        name = str(sheet_name or "")
        for profile in self._match_order:
            if profile.name_pattern in name:
                return profile
        return None

    def overrides_for(self, sheet_name: str) -> HeaderOverride | None:
        profile = self.find_profile(sheet_name)
        if profile is None:
            return None
        return profile.header_override
