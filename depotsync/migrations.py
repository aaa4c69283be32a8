from sqlalchemy import inspect, text


def ensure_schema(engine) -> None:
    """
    Older ingestion databases ship a ``downloads`` table without the game
    columns; add whatever is missing so re-tagging can run against them.
    """
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())

    if "downloads" in tables:
        columns = {col["name"] for col in inspector.get_columns("downloads")}
        alters = []
        if "depot_id" not in columns:
            alters.append("ALTER TABLE downloads ADD COLUMN depot_id BIGINT")
        if "game_app_id" not in columns:
            alters.append("ALTER TABLE downloads ADD COLUMN game_app_id BIGINT")
        if "game_name" not in columns:
            alters.append("ALTER TABLE downloads ADD COLUMN game_name VARCHAR(500)")
        _apply_alters(engine, alters)

    if "depot_mappings" in tables:
        columns = {col["name"] for col in inspector.get_columns("depot_mappings")}
        alters = []
        if "source" not in columns:
            alters.append("ALTER TABLE depot_mappings ADD COLUMN source VARCHAR(20) DEFAULT 'pics'")
        _apply_alters(engine, alters)


def _apply_alters(engine, statements: list[str]) -> None:
    if not statements:
        return
    with engine.begin() as connection:
        for statement in statements:
            connection.execute(text(statement))
