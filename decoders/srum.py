"""System Resource Usage Monitor (SRUDB.dat) decoder.

SRUM stores application and user names once in ``SruDbIdMapTable``; the
provider tables reference them by integer id. The id map is read first and
AppId / UserId columns are resolved through it. Each table is decoded best
effort: a failing table is reported and the remaining tables continue.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import datetime
from typing import Any

from contracts.artifacts import ArtifactFile, ArtifactKind, DecodedRecord
from contracts.errors import ContainerError, RecordError
from contracts.fingerprints import canonical_json_dumps
from decoders._binary import BoundsError, filetime, ole_date, sid
from decoders.base import ByteSource, ErrorCallback, FormatDecoder, register_decoder
from decoders.ese import EseDatabase, EseError, Table

logger = logging.getLogger(__name__)

ID_MAP_TABLE = "SruDbIdMapTable"
ID_TYPE_SID = 3

SRUM_TABLES = {
    "{5C8CF1C7-7257-4F13-B223-970EF5939312}": "srum_app_timeline",
    "{D10CA2FE-6FCF-4F6D-848E-B2E99266FA89}": "srum_application_resources",
    "{DA73FB89-2BEA-4DDC-86B8-6E048C6DA477}": "srum_energy_estimation",
    "{FEE4E14F-02A9-4550-B5CE-5FA2DA202E37}": "srum_energy_usage",
    "{FEE4E14F-02A9-4550-B5CE-5FA2DA202E37}LT": "srum_energy_usage_long_term",
    "{DD6636C4-8929-4683-974E-22C046A43763}": "srum_network_connectivity_usage",
    "{973F5D5C-1D90-4944-BE8E-24B94231A174}": "srum_network_data_usage",
    "{B6D82AF1-F780-4E17-8077-6CB9AD8A6FC4}": "srum_tagged_energy",
    "{7ACBBAA3-D029-4BE4-9A7A-0885927F1D8F}": "srum_vfuprov",
    "{D10CA2FE-6FCF-4F6D-848E-B2E99266FA86}": "srum_wpn_provider",
}

# Columns lifted out of the generic column map.
_ENVELOPE_COLUMNS = ("AutoIncId", "TimeStamp", "AppId", "UserId")


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, float):
        return ole_date(value)
    return None


def _is_user_table(name: str) -> bool:
    return not name.startswith("MSys") and name != ID_MAP_TABLE


@register_decoder(ArtifactKind.USAGE_DATABASE)
class SrumDecoder(FormatDecoder):
    """Decodes SRUDB.dat (and other ESE databases table by table)."""

    def decode(
        self,
        artifact: ArtifactFile,
        data: ByteSource,
        on_error: ErrorCallback | None = None,
    ) -> Iterator[DecodedRecord]:
        try:
            db = EseDatabase(data)
            tables = db.tables()
        except (EseError, BoundsError) as exc:
            raise ContainerError(f"ESE database unreadable: {exc}", source=artifact.path) from exc

        index = self._id_index(db, tables.get(ID_MAP_TABLE), artifact, on_error)
        seq = 0
        for name in sorted(n for n in tables if _is_user_table(n)):
            table = tables[name]
            try:
                for row in db.records(table):
                    fields, timestamp = self._row_fields(table, row, index)
                    yield DecodedRecord(
                        kind=self.kind,
                        source=artifact.path,
                        sequence=seq,
                        fields=fields,
                        timestamp=timestamp,
                    )
                    seq += 1
            except (EseError, BoundsError) as exc:
                self._report(
                    on_error,
                    RecordError(f"table {SRUM_TABLES.get(name, name)}: {exc}", source=artifact.path),
                )

    def _id_index(
        self,
        db: EseDatabase,
        table: Table | None,
        artifact: ArtifactFile,
        on_error: ErrorCallback | None,
    ) -> dict[int, str]:
        index: dict[int, str] = {}
        if table is None:
            logger.debug("No %s in %s; ids are left unresolved", ID_MAP_TABLE, artifact.path)
            return index
        try:
            for row in db.records(table):
                id_type = row.get("IdType")
                id_index = row.get("IdIndex")
                blob = row.get("IdBlob")
                if id_type is None or id_index is None or not isinstance(blob, bytes):
                    continue
                if id_type == ID_TYPE_SID:
                    try:
                        index[id_index] = sid(blob)
                    except BoundsError:
                        continue
                else:
                    index[id_index] = blob.decode("utf-16-le", errors="replace").replace("\x00", "")
        except (EseError, BoundsError) as exc:
            self._report(on_error, RecordError(f"{ID_MAP_TABLE}: {exc}", source=artifact.path))
        return index

    @staticmethod
    def _row_fields(table: Table, row: dict[str, Any], index: dict[int, str]) -> tuple[dict[str, Any], datetime | None]:
        timestamp = _to_datetime(row.get("TimeStamp"))
        columns = {k: v for k, v in row.items() if k not in _ENVELOPE_COLUMNS}
        if isinstance(columns.get("ConnectStartTime"), int):
            columns["ConnectStartTime"] = filetime(columns["ConnectStartTime"])
        app_id = row.get("AppId")
        user_id = row.get("UserId")
        fields = {
            "table_name": SRUM_TABLES.get(table.name, table.name),
            "table_guid": table.name if table.name.startswith("{") else None,
            "auto_inc_id": row.get("AutoIncId"),
            "timestamp": timestamp,
            "app_id": index.get(app_id) if isinstance(app_id, int) else None,
            "user_id": index.get(user_id) if isinstance(user_id, int) else None,
            "columns": canonical_json_dumps(columns),
        }
        return fields, timestamp
