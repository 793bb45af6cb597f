"""
Generador de datos de titular mexicanos para vehículos registrados sin titular.

Los datos son aleatorios pero con formato válido (RFC, teléfono de 10 dígitos,
correo, dirección en Jalisco).
"""

import random
import string

from parser import strip_accents

NOMBRES_MASCULINOS = [
    "José", "Luis", "Juan", "Miguel", "Carlos", "Francisco", "Antonio", "Alejandro",
    "Manuel", "Rafael", "Pedro", "Daniel", "Fernando", "Jorge", "Ricardo", "David",
    "Eduardo", "Roberto", "Sergio", "Alberto", "Javier", "Arturo", "Raúl", "Gerardo",
    "Enrique", "Guillermo", "Óscar", "Rubén", "Héctor", "Armando", "Salvador", "Ramón",
]

NOMBRES_FEMENINOS = [
    "María", "Guadalupe", "Juana", "Margarita", "Francisca", "Elena", "Rosa", "Verónica",
    "Teresa", "Leticia", "Carmen", "Ana", "Silvia", "Patricia", "Martha", "Josefina",
    "Gloria", "Sandra", "Alicia", "Adriana", "Beatriz", "Laura", "Claudia", "Norma",
    "Alejandra", "Gabriela", "Mónica", "Isabel", "Rocío", "Esperanza", "Dolores", "Luz",
]

APELLIDOS = [
    "García", "Rodríguez", "Martínez", "Hernández", "López", "González", "Pérez", "Sánchez",
    "Ramírez", "Cruz", "Flores", "Gómez", "Díaz", "Reyes", "Morales", "Jiménez",
    "Gutiérrez", "Ruiz", "Muñoz", "Álvarez", "Castillo", "Torres", "Vargas", "Ramos",
    "Castro", "Ortega", "Silva", "Mendoza", "Moreno", "Guerrero", "Medina", "Romero",
    "Vázquez", "Contreras", "Aguilar", "Herrera", "Luna", "Delgado", "Campos", "Navarro",
    "Salinas", "Estrada", "Espinoza", "Acosta", "Cervantes", "Fuentes", "Domínguez", "Cabrera",
    "Valdez", "Sandoval", "Velasco", "Pacheco", "Núñez", "Ibarra", "Maldonado", "Figueroa",
    "Ríos", "Valencia", "Camacho", "Trejo", "Galván", "Cortés", "Solís", "Lara", "Ávila", "Cárdenas",
]

CALLES = [
    "Av. Vallarta", "Av. Chapultepec", "Calle Hidalgo", "Av. Revolución", "Calle Madero",
    "Av. López Mateos", "Calle Morelos", "Av. Patria", "Calle Allende", "Av. Américas",
    "Calle Zaragoza", "Av. Independencia", "Calle Guerrero", "Av. México", "Calle Aldama",
    "Av. Juárez", "Calle Pedro Moreno", "Av. Federalismo", "Calle Reforma", "Av. Niños Héroes",
]

COLONIAS = [
    "Centro", "Americana", "Providencia", "Chapalita", "Ladrón de Guevara", "Jardines del Bosque",
    "Santa Tere", "Oblatos", "Las Águilas", "Ciudad del Sol", "Tlaquepaque Centro",
    "Santa Margarita", "Jardines Universidad", "Arcos Vallarta", "Mezquitán Country",
    "Colinas de San Javier", "Santa Isabel", "El Fresno", "Lomas del Valle", "Moderna",
]

MUNICIPIOS = [
    "Guadalajara", "Zapopan", "Tlaquepaque", "Tonalá", "Tlajomulco", "El Salto",
    "Ixtlahuacán", "Juanacatlán", "Chapala", "Tequila", "Amatitán", "Magdalena",
    "Teuchitlán", "Ahualulco", "Etzatlán", "San Marcos",
]

LADAS = ["33", "55", "81", "222", "656", "667", "668", "669", "686", "687"]
DOMINIOS = ["gmail.com", "hotmail.com", "yahoo.com.mx", "outlook.com", "live.com.mx"]
ESTADO_REGION = "JALISCO"

TITULAR_PENDIENTE = "TITULAR PENDIENTE"
RFC_GENERICO = "XAXX010101000"


def generar_nombre(rng: random.Random | None = None) -> str:
    rng = rng or random
    nombres = NOMBRES_MASCULINOS if rng.random() < 0.5 else NOMBRES_FEMENINOS
    return f"{rng.choice(nombres)} {rng.choice(APELLIDOS)} {rng.choice(APELLIDOS)}"


def generar_rfc(rng: random.Random | None = None) -> str:
    """4 letras + 6 dígitos + 3 alfanuméricos."""
    rng = rng or random
    letras = "".join(rng.choice(string.ascii_uppercase) for _ in range(4))
    fecha = "".join(rng.choice(string.digits) for _ in range(6))
    homoclave = "".join(rng.choice(string.ascii_uppercase + string.digits) for _ in range(3))
    return letras + fecha + homoclave


def generar_telefono(rng: random.Random | None = None) -> str:
    """Lada + dígitos hasta completar 10."""
    rng = rng or random
    lada = rng.choice(LADAS)
    resto = "".join(rng.choice(string.digits) for _ in range(10 - len(lada)))
    return lada + resto


def generar_correo(nombre: str, rng: random.Random | None = None) -> str:
    rng = rng or random
    limpio = "".join(c for c in strip_accents(nombre).lower() if c.isalnum())
    return f"{limpio}{rng.randint(1, 999)}@{rng.choice(DOMINIOS)}"


def generar_direccion(rng: random.Random | None = None) -> dict[str, str]:
    rng = rng or random
    return {
        "calle": f"{rng.choice(CALLES)} {rng.randint(1, 999)}",
        "colonia": rng.choice(COLONIAS),
        "municipio": rng.choice(MUNICIPIOS),
        "estado_region": ESTADO_REGION,
        "cp": str(rng.randint(10000, 99999)),
    }


def generar_datos_mexicanos(rng: random.Random | None = None) -> dict[str, str]:
    """
    Genera un titular completo.

    Args:
        rng: Generador aleatorio (para pruebas reproducibles)

    Returns:
        dict: titular, rfc, telefono, correo, calle, colonia, municipio, estado_region, cp
    """
    titular = generar_nombre(rng)
    return {
        "titular": titular,
        "rfc": generar_rfc(rng),
        "telefono": generar_telefono(rng),
        "correo": generar_correo(titular, rng),
        **generar_direccion(rng),
    }


def datos_titular_pendiente() -> dict[str, str]:
    """Datos mínimos cuando la generación falla."""
    return {
        "titular": TITULAR_PENDIENTE,
        "rfc": RFC_GENERICO,
        "telefono": "",
        "correo": "",
        "calle": "",
        "colonia": "",
        "municipio": "",
        "estado_region": "",
        "cp": "",
    }
