"""
Modelos de datos de pólizas, vehículos y notificaciones programadas.

Los documentos se guardan como JSONB en PostgreSQL (ver db_handler); aquí solo
viven la forma de los datos y las transiciones de estado de las notificaciones.
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils import now_local


class EstadoPago(str, Enum):
    REALIZADO = "REALIZADO"
    PLANIFICADO = "PLANIFICADO"
    PENDIENTE = "PENDIENTE"
    CANCELADO = "CANCELADO"


class EstadoRegistro(str, Enum):
    PENDIENTE = "PENDIENTE"
    ASIGNADO = "ASIGNADO"
    NO_ASIGNADO = "NO_ASIGNADO"


class EstadoPoliza(str, Enum):
    ACTIVO = "ACTIVO"
    INACTIVO = "INACTIVO"
    ELIMINADO = "ELIMINADO"


class TipoPoliza(str, Enum):
    REGULAR = "REGULAR"
    NIV = "NIV"


class EstadoVehiculo(str, Enum):
    SIN_POLIZA = "SIN_POLIZA"
    CON_POLIZA = "CON_POLIZA"
    ELIMINADO = "ELIMINADO"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TipoNotificacion(str, Enum):
    CONTACTO = "CONTACTO"
    TERMINO = "TERMINO"
    MANUAL = "MANUAL"


ACTIVE_NOTIFICATION_STATUSES = (
    NotificationStatus.PENDING,
    NotificationStatus.SCHEDULED,
    NotificationStatus.PROCESSING,
)


class Coordenadas(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    model_config = ConfigDict(extra='ignore')


class Pago(BaseModel):
    monto: float = Field(..., ge=0)
    fecha_pago: datetime
    estado: EstadoPago = EstadoPago.REALIZADO
    metodo_pago: Optional[str] = None
    notas: Optional[str] = None

    model_config = ConfigDict(extra='ignore')


class Registro(BaseModel):
    """Intento de servicio; se convierte en Servicio al asignarse."""
    numero_registro: int
    costo: float
    fecha_registro: datetime
    numero_expediente: str
    origen_destino: str = ""
    estado: EstadoRegistro = EstadoRegistro.PENDIENTE
    fecha_contacto_programada: Optional[datetime] = None
    fecha_termino_programada: Optional[datetime] = None
    coordenadas: Optional[dict[str, Any]] = None
    ruta_info: Optional[dict[str, Any]] = None

    model_config = ConfigDict(extra='ignore')


class Servicio(BaseModel):
    numero_servicio: int
    costo: float
    fecha_servicio: datetime
    numero_expediente: str
    origen_destino: str = ""
    fecha_contacto_programada: Optional[datetime] = None
    fecha_termino_programada: Optional[datetime] = None
    numero_registro_origen: Optional[int] = None
    coordenadas: Optional[dict[str, Any]] = None
    ruta_info: Optional[dict[str, Any]] = None

    model_config = ConfigDict(extra='ignore')


class Archivo(BaseModel):
    url: str
    key: str
    size: int = 0
    content_type: str = "application/octet-stream"
    uploaded_at: datetime = Field(default_factory=now_local)
    original_name: Optional[str] = None

    model_config = ConfigDict(extra='ignore')


class Archivos(BaseModel):
    fotos: List[Archivo] = Field(default_factory=list)
    pdfs: List[Archivo] = Field(default_factory=list)

    model_config = ConfigDict(extra='ignore')


class Policy(BaseModel):
    """
    Póliza de seguro de un vehículo.

    Attributes:
        numero_poliza: Número único, siempre en mayúsculas y sin espacios extremos
        pagos: Pagos realizados y planificados
        registros: Intentos de servicio (pendientes, asignados o no asignados)
        servicios: Servicios asignados
        tipo_poliza: REGULAR o NIV (se elimina tras su primer servicio)
    """
    id: Optional[int] = None
    titular: str = Field(..., min_length=1)
    correo: str = ""
    contrasena: str = ""
    rfc: str = ""
    telefono: str = ""
    calle: str = ""
    colonia: str = ""
    municipio: str = ""
    estado_region: str = ""
    cp: str = ""
    marca: str = ""
    submarca: str = ""
    anio: Optional[int] = None
    color: str = ""
    serie: str = ""
    placas: str = ""
    agente_cotizador: str = ""
    aseguradora: str = ""
    numero_poliza: str = Field(..., min_length=1)
    fecha_emision: datetime
    fecha_fin_cobertura: Optional[datetime] = None
    fecha_fin_gracia: Optional[datetime] = None
    dias_restantes_gracia: Optional[int] = None
    dias_restantes_cobertura: Optional[int] = None
    estado_poliza: str = ""
    calificacion: int = 0
    estado: EstadoPoliza = EstadoPoliza.ACTIVO
    fecha_eliminacion: Optional[datetime] = None
    motivo_eliminacion: str = ""
    tipo_poliza: TipoPoliza = TipoPoliza.REGULAR
    es_niv: bool = False
    pagos: List[Pago] = Field(default_factory=list)
    registros: List[Registro] = Field(default_factory=list)
    servicios: List[Servicio] = Field(default_factory=list)
    registro_counter: int = 0
    servicio_counter: int = 0
    total_servicios: int = 0
    archivos: Archivos = Field(default_factory=Archivos)
    vehicle_id: Optional[int] = None
    creado_via: str = ""

    model_config = ConfigDict(extra='ignore')

    @field_validator('numero_poliza')
    @classmethod
    def normalize_numero(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError('numero_poliza no puede estar vacío')
        return v

    @field_validator('titular', 'rfc', 'marca', 'submarca', 'color', 'serie', 'placas', 'aseguradora')
    @classmethod
    def to_upper(cls, v: str) -> str:
        return v.strip().upper() if v else v

    @property
    def is_niv(self) -> bool:
        return self.tipo_poliza == TipoPoliza.NIV or self.es_niv

    def last_servicio(self) -> Servicio | None:
        return self.servicios[-1] if self.servicios else None


class Vehicle(BaseModel):
    id: Optional[int] = None
    serie: str = Field(..., min_length=5)
    marca: str
    submarca: str
    anio: int
    color: str
    placas: str = "SIN PLACAS"
    titular: str = ""
    rfc: str = ""
    telefono: str = ""
    correo: str = ""
    calle: str = ""
    colonia: str = ""
    municipio: str = ""
    estado_region: str = ""
    cp: str = ""
    fotos: List[Archivo] = Field(default_factory=list)
    estado: EstadoVehiculo = EstadoVehiculo.SIN_POLIZA
    policy_id: Optional[int] = None
    creado_por: str = ""
    creado_via: str = ""
    created_at: datetime = Field(default_factory=now_local)

    model_config = ConfigDict(extra='ignore')

    @field_validator('serie')
    @classmethod
    def normalize_serie(cls, v: str) -> str:
        return "".join(v.split()).upper()

    @property
    def descripcion(self) -> str:
        return f"{self.marca} {self.submarca} {self.anio}"


class Aseguradora(BaseModel):
    nombre: str
    nombre_corto: str
    aliases: List[str] = Field(default_factory=list)
    activo: bool = True

    model_config = ConfigDict(extra='ignore')


class ScheduledNotification(BaseModel):
    """
    Notificación programada para el grupo de operación.

    Las transiciones de estado solo modifican el modelo; la persistencia la
    hace db_handler.notifications.
    """
    id: Optional[int] = None
    numero_poliza: str
    expediente_num: str
    origen_destino: str = ""
    marca_modelo: str = ""
    color: str = ""
    placas: str = ""
    telefono: str = ""
    contact_time: str = ""
    scheduled_date: datetime
    tipo_notificacion: TipoNotificacion = TipoNotificacion.CONTACTO
    status: NotificationStatus = NotificationStatus.PENDING
    target_group_id: int
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    last_scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error: str = ""
    created_by: dict[str, Any] = Field(default_factory=dict)
    additional_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=now_local)

    model_config = ConfigDict(extra='ignore')

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_NOTIFICATION_STATUSES

    def mark_scheduled(self) -> "ScheduledNotification":
        self.status = NotificationStatus.SCHEDULED
        self.last_scheduled_at = now_local()
        return self

    def mark_processing(self) -> "ScheduledNotification":
        self.status = NotificationStatus.PROCESSING
        self.processing_started_at = now_local()
        return self

    def mark_sent(self) -> "ScheduledNotification":
        self.status = NotificationStatus.SENT
        self.sent_at = now_local()
        self.processing_started_at = None
        return self

    def mark_failed(self, error: str) -> "ScheduledNotification":
        self.status = NotificationStatus.FAILED
        self.error = error
        self.retry_count += 1
        self.last_retry_at = now_local()
        self.processing_started_at = None
        return self

    def cancel(self) -> "ScheduledNotification":
        self.status = NotificationStatus.CANCELLED
        return self

    def reschedule(self, new_date: datetime) -> "ScheduledNotification":
        self.scheduled_date = new_date
        self.status = NotificationStatus.PENDING
        self.processing_started_at = None
        self.last_scheduled_at = None
        return self
