import logging

from db_handler.db import db_transaction

# Catálogo base de aseguradoras: (nombre, nombre_corto, alias)
ASEGURADORAS = [
    ("QUALITAS COMPAÑIA DE SEGUROS", "QUALITAS", ["QUALITAS", "QUALITAS SEGUROS"]),
    ("GRUPO NACIONAL PROVINCIAL", "GNP", ["GNP SEGUROS"]),
    ("AXA SEGUROS", "AXA", []),
    ("HDI SEGUROS", "HDI", []),
    ("CHUBB SEGUROS", "CHUBB", ["ABA", "ABA SEGUROS"]),
    ("MAPFRE MEXICO", "MAPFRE", ["MAPFRE TEPEYAC"]),
    ("SEGUROS AFIRME", "AFIRME", []),
    ("SEGUROS BANORTE", "BANORTE", []),
    ("SEGUROS ATLAS", "ATLAS", []),
    ("ANA COMPAÑIA DE SEGUROS", "ANA", ["ANA SEGUROS"]),
    ("GENERAL DE SEGUROS", "GENERAL", []),
    ("SEGUROS EL POTOSI", "EL POTOSI", ["POTOSI"]),
    ("SEGUROS SURA", "SURA", []),
    ("ZURICH SEGUROS", "ZURICH", []),
    ("SEGUROS INBURSA", "INBURSA", []),
    ("PRIMERO SEGUROS", "PRIMERO", []),
]


def get_or_create_aseguradora(cursor, nombre: str, nombre_corto: str, aliases: list[str]) -> int:
    """
    Devuelve aseguradora_id para el nombre dado.
    Si no existe, crea el registro.
    """
    cursor.execute('SELECT "aseguradora_id" FROM "aseguradoras" WHERE "nombre" = %s', (nombre,))
    result = cursor.fetchone()
    if result:
        return result[0]
    cursor.execute(
        '''INSERT INTO "aseguradoras" ("nombre", "nombre_corto", "aliases")
           VALUES (%s, %s, %s)
           RETURNING "aseguradora_id";
        ''',
        (nombre, nombre_corto, aliases)
    )
    logging.info(f"Aseguradora creada: {nombre_corto}")
    return cursor.fetchone()[0]


@db_transaction(commit=True)
def fill_aseguradoras(cursor) -> int:
    """Carga el catálogo. Devuelve cuántas aseguradoras quedan registradas."""
    for nombre, nombre_corto, aliases in ASEGURADORAS:
        get_or_create_aseguradora(cursor, nombre, nombre_corto, aliases)
    return len(ASEGURADORAS)


def main():
    from db_handler.db import init_schema

    init_schema()
    total = fill_aseguradoras()
    logging.info(f"Catálogo de aseguradoras listo ({total})")


if __name__ == "__main__":
    main()
