"""
Almacenamiento de fotos y PDFs en Cloudflare R2 (API S3 a través de minio).

Incluye:
- Validación de configuración y verificación del bucket
- Reintentos con backoff exponencial
- Subida, descarga, copia, borrado y listado de objetos
- Métricas de operaciones y chequeo de salud
"""

import io
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from urllib.parse import urlparse

import urllib3
from minio import Minio
from minio.commonconfig import CopySource
from minio.error import S3Error

from config import (
    CLOUDFLARE_R2_ACCESS_KEY,
    CLOUDFLARE_R2_BUCKET,
    CLOUDFLARE_R2_ENDPOINT,
    CLOUDFLARE_R2_PUBLIC_URL,
    CLOUDFLARE_R2_SECRET_KEY,
    R2_HEALTH_CHECK_INTERVAL,
    R2_MAX_RETRIES,
    R2_RETRY_BACKOFF,
    R2_SIGNED_URL_EXPIRES,
)
from parser import strip_accents

SANITIZE_RE = re.compile(r"[^a-zA-Z0-9\-_]")

IMAGE_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


@dataclass
class ObjectInfo:
    """Información de un objeto en R2"""
    object_name: str
    size: int
    etag: str
    last_modified: datetime | None
    content_type: str
    is_dir: bool = False


class R2StorageError(Exception):
    """Error base de operaciones con R2"""
    pass


class R2ConnectionError(R2StorageError):
    """Falló la conexión con R2"""
    pass


class R2UploadError(R2StorageError):
    """Falló la subida de un archivo"""
    pass


class R2DownloadError(R2StorageError):
    """Falló la descarga de un archivo"""
    pass


class R2DeleteError(R2StorageError):
    """Falló el borrado de un archivo"""
    pass


class RetryableR2Operation:
    """Reintenta operaciones de R2 con backoff exponencial"""

    max_retries: int
    backoff_factor: float
    max_delay: float

    def __init__(self, max_retries: int = 3, backoff_factor: float = 2.0, max_delay: float = 60.0):
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay

    def execute_with_retry(self, operation: Callable[..., Any], *args, **kwargs) -> Any:
        last_exception = None

        for attempt in range(self.max_retries + 1):
            try:
                return operation(*args, **kwargs)
            except Exception as e:
                last_exception = e
                if attempt == self.max_retries:
                    break

                delay = min(self.backoff_factor ** attempt, self.max_delay)
                logging.warning(f"Operación R2 fallida (intento {attempt + 1}/{self.max_retries + 1}): {e}")
                logging.info(f"Reintentando en {delay:.2f} segundos...")
                time.sleep(delay)

        raise R2StorageError(f"La operación falló tras {self.max_retries + 1} intentos: {last_exception}")


class R2HealthMonitor:
    """Salud del servicio y métricas de operaciones"""

    client: Minio
    bucket: str
    last_health_check: float
    health_check_interval: int
    is_healthy: bool
    metrics: dict[str, Any]

    def __init__(self, client: Minio, bucket: str, health_check_interval: int = R2_HEALTH_CHECK_INTERVAL):
        self.client = client
        self.bucket = bucket
        self.last_health_check = 0
        self.health_check_interval = health_check_interval
        self.is_healthy = False
        self.metrics = {
            'operations_total': 0,
            'operations_successful': 0,
            'operations_failed': 0,
            'total_bytes_uploaded': 0,
            'total_bytes_downloaded': 0,
            'average_response_time': 0.0
        }

    def health_check(self) -> bool:
        """Verifica que el bucket responde (cacheado health_check_interval segundos)"""
        current_time = time.time()
        if current_time - self.last_health_check < self.health_check_interval:
            return self.is_healthy

        try:
            start_time = time.time()
            # Las credenciales de R2 suelen estar limitadas a un bucket: no usar list_buckets
            self.client.bucket_exists(self.bucket)
            response_time = time.time() - start_time

            self.is_healthy = True
            self.last_health_check = current_time
            logging.debug(f"Chequeo de salud de R2 correcto en {response_time:.3f}s")
            return True

        except Exception as e:
            self.is_healthy = False
            self.last_health_check = current_time
            logging.error(f"Chequeo de salud de R2 fallido: {e}")
            return False

    def record_operation(self, operation: str, success: bool, duration: float, bytes_transferred: int = 0):
        self.metrics['operations_total'] += 1

        if success:
            self.metrics['operations_successful'] += 1
            if operation == 'upload':
                self.metrics['total_bytes_uploaded'] += bytes_transferred
            elif operation == 'download':
                self.metrics['total_bytes_downloaded'] += bytes_transferred
        else:
            self.metrics['operations_failed'] += 1

        self._update_response_time(duration)

    def _update_response_time(self, duration: float):
        total_ops = self.metrics['operations_total']
        if total_ops > 0:
            current_avg = self.metrics['average_response_time']
            self.metrics['average_response_time'] = (current_avg * (total_ops - 1) + duration) / total_ops

    def get_health_report(self) -> dict[str, Any]:
        success_rate = 0.0
        if self.metrics['operations_total'] > 0:
            success_rate = (self.metrics['operations_successful'] / self.metrics['operations_total']) * 100

        return {
            'is_healthy': self.is_healthy,
            'last_check': datetime.fromtimestamp(self.last_health_check),
            'success_rate': success_rate,
            'metrics': self.metrics.copy()
        }


def sanitize_name(value: str) -> str:
    return SANITIZE_RE.sub("", strip_accents(value))


def generate_file_name(numero_poliza: str, original_name: str, file_type: str = "file") -> str:
    """
    Clave única para un archivo de póliza.

    Returns:
        str: "{tipo}/{póliza}/{timestamp ms}_{16 hex}_{nombre}{extensión}"
    """
    base, extension = os.path.splitext(original_name or "")
    timestamp = int(time.time() * 1000)
    random_id = secrets.token_hex(8)
    return f"{file_type}/{sanitize_name(numero_poliza)}/{timestamp}_{random_id}_{sanitize_name(base)}{extension}"


def get_image_content_type(file_name: str) -> str:
    return IMAGE_CONTENT_TYPES.get(os.path.splitext(file_name)[1].lower(), "image/jpeg")


class R2StorageManager:
    """Cliente de Cloudflare R2 con reintentos y métricas"""

    endpoint: str | None
    access_key: str | None
    secret_key: str | None
    bucket: str | None
    public_url: str | None
    client: Minio | None
    health_monitor: R2HealthMonitor | None
    retry_handler: RetryableR2Operation

    def __init__(
        self,
        endpoint: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        bucket: str | None = None,
        public_url: str | None = None,
    ):
        self.endpoint = endpoint or CLOUDFLARE_R2_ENDPOINT
        self.access_key = access_key or CLOUDFLARE_R2_ACCESS_KEY
        self.secret_key = secret_key or CLOUDFLARE_R2_SECRET_KEY
        self.bucket = bucket or CLOUDFLARE_R2_BUCKET
        self.public_url = (public_url or CLOUDFLARE_R2_PUBLIC_URL or "").rstrip("/") or None

        self.client = None
        self.health_monitor = None
        self.retry_handler = RetryableR2Operation(max_retries=R2_MAX_RETRIES, backoff_factor=R2_RETRY_BACKOFF)

        self._validate_config()
        self._initialize_client()

    def _validate_config(self):
        if not all([self.endpoint, self.access_key, self.secret_key, self.bucket]):
            raise R2ConnectionError(
                "Configuración de R2 incompleta. Revisa CLOUDFLARE_R2_ENDPOINT, "
                "CLOUDFLARE_R2_ACCESS_KEY, CLOUDFLARE_R2_SECRET_KEY y CLOUDFLARE_R2_BUCKET."
            )

    def _initialize_client(self) -> bool:
        try:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

            parsed = urlparse(self.endpoint if "://" in self.endpoint else f"https://{self.endpoint}")
            self.client = Minio(
                parsed.netloc,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=parsed.scheme != "http",
                region="auto",
            )
            self.health_monitor = R2HealthMonitor(self.client, self.bucket)

            if not self.health_monitor.health_check():
                raise R2ConnectionError("No se pudo conectar con R2")

            self._ensure_bucket_exists()

            logging.info("Cliente de R2 inicializado correctamente")
            return True

        except Exception as e:
            logging.error(f"No se pudo inicializar el cliente de R2: {e}")
            raise R2ConnectionError(f"Inicialización de R2 fallida: {e}")

    def _ensure_bucket_exists(self):
        if not self.client:
            raise R2ConnectionError("Cliente de R2 no inicializado")

        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
                logging.info(f"Bucket de R2 creado: {self.bucket}")
        except S3Error as e:
            if e.code in ('BucketAlreadyOwnedByYou', 'BucketAlreadyExists'):
                logging.debug(f"El bucket {self.bucket} ya existe")
            else:
                logging.error(f"No se pudo crear el bucket {self.bucket}: {e}")
                raise R2StorageError(f"Creación de bucket fallida: {e}")

    def _timed(self, operation: str, error_cls: type[R2StorageError], func: Callable[[], Any], size: int = 0) -> Any:
        """Ejecuta func registrando métricas; los errores se envuelven en error_cls."""
        if not self.client or not self.health_monitor:
            raise error_cls("Cliente de R2 no inicializado")
        start_time = time.time()
        try:
            result = func()
        except Exception as e:
            self.health_monitor.record_operation(operation, False, time.time() - start_time)
            raise error_cls(f"{operation} fallido: {e}")
        transferred = len(result) if operation == 'download' else size
        self.health_monitor.record_operation(operation, True, time.time() - start_time, transferred)
        return result

    def get_file_url(self, key: str) -> str:
        """URL pública si hay dominio configurado; si no, URL firmada temporal."""
        if self.public_url:
            return f"{self.public_url}/{key}"
        return self.get_signed_url(key)

    def get_signed_url(self, key: str, expires: int = R2_SIGNED_URL_EXPIRES) -> str:
        return self.client.presigned_get_object(self.bucket, key, expires=timedelta(seconds=expires))

    def upload_bytes(
        self,
        data: bytes,
        key: str,
        content_type: str,
        metadata: dict[str, str] | None = None,
        original_name: str | None = None,
    ) -> dict[str, Any]:
        """
        Sube un buffer a R2.

        Args:
            data: Contenido del archivo
            key: Clave del objeto
            content_type: Tipo MIME
            metadata: Metadatos adicionales (solo ASCII)
            original_name: Nombre original para el registro del archivo

        Returns:
            dict: url, key, size, content_type, uploaded_at, original_name
        """
        file_metadata = {k: sanitize_name(str(v)) for k, v in (metadata or {}).items()}
        file_metadata.update({'uploaded_at': datetime.now().isoformat(), 'service': 'polizas-bot'})

        def upload_operation():
            def put():
                self.client.put_object(
                    self.bucket,
                    key,
                    io.BytesIO(data),
                    length=len(data),
                    content_type=content_type,
                    metadata=file_metadata,
                )
                return True
            self._timed('upload', R2UploadError, put, len(data))
            logging.info(f"Archivo subido a R2: {key} ({len(data)} bytes)")

        self.retry_handler.execute_with_retry(upload_operation)
        return {
            "url": self.get_file_url(key),
            "key": key,
            "size": len(data),
            "content_type": content_type,
            "uploaded_at": datetime.now(),
            "original_name": original_name,
        }

    def upload_policy_photo(self, data: bytes, numero_poliza: str, original_name: str) -> dict[str, Any]:
        key = generate_file_name(numero_poliza, original_name, "fotos")
        return self.upload_bytes(
            data, key, get_image_content_type(original_name),
            {"policy_number": numero_poliza, "type": "foto"}, original_name,
        )

    def upload_policy_pdf(self, data: bytes, numero_poliza: str, original_name: str) -> dict[str, Any]:
        key = generate_file_name(numero_poliza, original_name, "pdfs")
        return self.upload_bytes(
            data, key, "application/pdf",
            {"policy_number": numero_poliza, "type": "pdf"}, original_name,
        )

    def download_file(self, key: str) -> bytes:
        def download_operation():
            def get():
                response = self.client.get_object(self.bucket, key)
                try:
                    return response.read()
                finally:
                    response.close()
                    response.release_conn()
            return self._timed('download', R2DownloadError, get)

        return self.retry_handler.execute_with_retry(download_operation)

    def copy_file(self, source_key: str, dest_key: str) -> dict[str, Any]:
        """Copia un objeto dentro del bucket (p.ej. fotos de vehículo a la póliza)."""
        def copy_operation():
            def copy():
                return self.client.copy_object(self.bucket, dest_key, CopySource(self.bucket, source_key))
            self._timed('copy', R2UploadError, copy)
            logging.info(f"Archivo copiado en R2: {source_key} -> {dest_key}")

        self.retry_handler.execute_with_retry(copy_operation)
        return {"url": self.get_file_url(dest_key), "key": dest_key}

    def delete_file(self, key: str) -> bool:
        def delete_operation():
            def remove():
                self.client.remove_object(self.bucket, key)
                return True
            self._timed('delete', R2DeleteError, remove)
            logging.info(f"Archivo eliminado de R2: {key}")
            return True

        return self.retry_handler.execute_with_retry(delete_operation)

    def file_exists(self, key: str) -> bool:
        try:
            self.client.stat_object(self.bucket, key)
            return True
        except S3Error as e:
            if e.code in ('NoSuchKey', 'NoSuchObject', 'NotFound'):
                return False
            raise R2StorageError(f"No se pudo consultar {key}: {e}")

    def list_files(self, prefix: str = "", max_results: int = 1000) -> list[ObjectInfo]:
        def list_operation():
            def collect():
                objects = []
                for obj in self.client.list_objects(self.bucket, prefix=prefix, recursive=True):
                    if len(objects) >= max_results:
                        break
                    objects.append(ObjectInfo(
                        object_name=obj.object_name,
                        size=obj.size or 0,
                        etag=obj.etag or "",
                        last_modified=obj.last_modified,
                        content_type=obj.content_type or 'application/octet-stream',
                        is_dir=obj.is_dir,
                    ))
                return objects
            objects = self._timed('list', R2StorageError, collect)
            logging.debug(f"Listados {len(objects)} objetos con prefijo '{prefix}'")
            return objects

        return self.retry_handler.execute_with_retry(list_operation)

    def get_health_status(self) -> dict[str, Any]:
        health_report = self.health_monitor.get_health_report() if self.health_monitor else {}
        return {
            'connection_status': 'healthy' if health_report.get('is_healthy') else 'unhealthy',
            'health_report': health_report,
            'service_info': {
                'endpoint': self.endpoint,
                'bucket': self.bucket,
                'has_public_url': bool(self.public_url),
            }
        }


_r2_storage: R2StorageManager | None = None


def get_r2_storage() -> R2StorageManager:
    global _r2_storage

    if _r2_storage is None:
        _r2_storage = R2StorageManager()

    return _r2_storage


def reset_r2_storage():
    """Reinicia la instancia global (para pruebas)"""
    global _r2_storage
    _r2_storage = None
