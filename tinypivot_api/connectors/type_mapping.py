"""
Column type mapping

Maps warehouse-native column types to the cross-backend vocabulary
{string, number, boolean, date, unknown}. Unrecognized types map to unknown.
"""

from tinypivot_api.models.enums import ColumnType, DatasourceType

PG_TYPE_MAP: dict[str, ColumnType] = {
    # Strings
    "character varying": ColumnType.STRING,
    "varchar": ColumnType.STRING,
    "character": ColumnType.STRING,
    "char": ColumnType.STRING,
    "text": ColumnType.STRING,
    "uuid": ColumnType.STRING,
    "name": ColumnType.STRING,
    "citext": ColumnType.STRING,
    # Numbers
    "integer": ColumnType.NUMBER,
    "int": ColumnType.NUMBER,
    "int2": ColumnType.NUMBER,
    "int4": ColumnType.NUMBER,
    "int8": ColumnType.NUMBER,
    "smallint": ColumnType.NUMBER,
    "bigint": ColumnType.NUMBER,
    "decimal": ColumnType.NUMBER,
    "numeric": ColumnType.NUMBER,
    "real": ColumnType.NUMBER,
    "double precision": ColumnType.NUMBER,
    "float4": ColumnType.NUMBER,
    "float8": ColumnType.NUMBER,
    "money": ColumnType.NUMBER,
    "serial": ColumnType.NUMBER,
    "bigserial": ColumnType.NUMBER,
    # Booleans
    "boolean": ColumnType.BOOLEAN,
    "bool": ColumnType.BOOLEAN,
    # Dates
    "date": ColumnType.DATE,
    "timestamp": ColumnType.DATE,
    "timestamp without time zone": ColumnType.DATE,
    "timestamp with time zone": ColumnType.DATE,
    "timestamptz": ColumnType.DATE,
    "time": ColumnType.DATE,
    "time without time zone": ColumnType.DATE,
    "time with time zone": ColumnType.DATE,
    "timetz": ColumnType.DATE,
    "interval": ColumnType.DATE,
}

SNOWFLAKE_TYPE_MAP: dict[str, ColumnType] = {
    # Strings
    "VARCHAR": ColumnType.STRING,
    "CHAR": ColumnType.STRING,
    "CHARACTER": ColumnType.STRING,
    "STRING": ColumnType.STRING,
    "TEXT": ColumnType.STRING,
    "BINARY": ColumnType.STRING,
    "VARBINARY": ColumnType.STRING,
    # Numbers
    "NUMBER": ColumnType.NUMBER,
    "DECIMAL": ColumnType.NUMBER,
    "NUMERIC": ColumnType.NUMBER,
    "INT": ColumnType.NUMBER,
    "INTEGER": ColumnType.NUMBER,
    "BIGINT": ColumnType.NUMBER,
    "SMALLINT": ColumnType.NUMBER,
    "TINYINT": ColumnType.NUMBER,
    "BYTEINT": ColumnType.NUMBER,
    "FLOAT": ColumnType.NUMBER,
    "FLOAT4": ColumnType.NUMBER,
    "FLOAT8": ColumnType.NUMBER,
    "DOUBLE": ColumnType.NUMBER,
    "DOUBLE PRECISION": ColumnType.NUMBER,
    "REAL": ColumnType.NUMBER,
    # Booleans
    "BOOLEAN": ColumnType.BOOLEAN,
    # Dates
    "DATE": ColumnType.DATE,
    "DATETIME": ColumnType.DATE,
    "TIME": ColumnType.DATE,
    "TIMESTAMP": ColumnType.DATE,
    "TIMESTAMP_LTZ": ColumnType.DATE,
    "TIMESTAMP_NTZ": ColumnType.DATE,
    "TIMESTAMP_TZ": ColumnType.DATE,
}


def map_postgres_type(native_type: str | None) -> ColumnType:
    if not native_type:
        return ColumnType.UNKNOWN
    return PG_TYPE_MAP.get(native_type.strip().lower(), ColumnType.UNKNOWN)


def map_snowflake_type(native_type: str | None) -> ColumnType:
    if not native_type:
        return ColumnType.UNKNOWN
    base_type = native_type.split("(", 1)[0].strip().upper()
    return SNOWFLAKE_TYPE_MAP.get(base_type, ColumnType.UNKNOWN)


def map_column_type(native_type: str | None, datasource_type: DatasourceType) -> ColumnType:
    """Map a native type name for the given backend."""
    if datasource_type == DatasourceType.SNOWFLAKE:
        return map_snowflake_type(native_type)
    return map_postgres_type(native_type)
