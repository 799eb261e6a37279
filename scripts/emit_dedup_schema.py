#!/usr/bin/env python3
"""Emit the DDL for the durable image dedup table."""

from __future__ import annotations

import argparse

from article_images.services.dedup_store import DEDUP_TABLE_DDL


def render_sql(*, schema: str | None) -> str:
    statements = DEDUP_TABLE_DDL.strip()
    if schema:
        statements = f"create schema if not exists {schema};\nset search_path to {schema};\n\n{statements}"
    return f"""-- Image dedup store bootstrap SQL
-- Run once per database before pointing AIMG_DATABASE_URL at it.

{statements}
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL that creates the image dedup table.")
    parser.add_argument("--schema", help="Optional schema to create the table in")
    args = parser.parse_args()
    print(render_sql(schema=args.schema))


if __name__ == "__main__":
    main()
