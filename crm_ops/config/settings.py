"""
Configuración y carga de variables de entorno para las herramientas operativas del CRM.
"""
import os
from typing import Dict, List, Optional
from urllib.parse import quote_plus
from dotenv import load_dotenv

# Cargar variables de entorno desde .env
load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """Configuración centralizada de crm-ops."""

    def __init__(self):
        # Evolution API (gateway de WhatsApp)
        self.EVOLUTION_API_URL: str = os.getenv("EVOLUTION_API_URL", "").rstrip("/")
        self.EVOLUTION_API_KEY: str = os.getenv("EVOLUTION_API_KEY", "")
        self.EVOLUTION_INSTANCE_NAME: str = os.getenv("EVOLUTION_INSTANCE_NAME", "loja")
        self.EVOLUTION_WEBHOOK_URL: str = os.getenv("EVOLUTION_WEBHOOK_URL", "")

        # API propia del CRM (Next.js)
        self.CRM_BASE_URL: str = os.getenv("CRM_BASE_URL", "http://localhost:9003").rstrip("/")
        self.CRM_PORTS: List[int] = [int(p) for p in _split_csv(os.getenv("CRM_PORTS", "3000,9003,9004"))]

        # Evo AI: API A2A y Postgres
        self.EVO_AI_API_KEY: str = os.getenv("EVO_AI_API_KEY", "")
        self.EVO_AI_DATABASE_URL: str = os.getenv("EVO_AI_DATABASE_URL", "")
        self.EVO_AI_DB_HOST: str = os.getenv("EVO_AI_DB_HOST", "")
        self.EVO_AI_DB_PORT: int = int(os.getenv("EVO_AI_DB_PORT", "5432"))
        self.EVO_AI_DB_USER: str = os.getenv("EVO_AI_DB_USER", "postgres")
        self.EVO_AI_DB_PASSWORD: str = os.getenv("EVO_AI_DB_PASSWORD", "")
        self.EVO_AI_DB_NAME: str = os.getenv("EVO_AI_DB_NAME", "postgres")
        self.EVO_AI_DB_SSLMODE: str = os.getenv("EVO_AI_DB_SSLMODE", "prefer")
        self.EVO_AI_DEFAULT_CLIENT_ID: str = os.getenv("EVO_AI_DEFAULT_CLIENT_ID", "")

        # Firebase / Firestore
        self.FIREBASE_CREDENTIALS_PATH: str = os.getenv(
            "FIREBASE_CREDENTIALS_PATH", os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "")
        )
        self.FIREBASE_PROJECT_ID: str = os.getenv("FIREBASE_PROJECT_ID", "")

        # RabbitMQ
        self.RABBITMQ_URL: str = os.getenv("RABBITMQ_URL", "")
        self.RABBITMQ_EXCHANGE: str = os.getenv("RABBITMQ_EXCHANGE", "crm.messages")
        self.RABBITMQ_QUEUES: Dict[str, str] = {
            "outbound": os.getenv("RABBITMQ_QUEUE_OUTBOUND", "crm.messages.outbound"),
            "inbound": os.getenv("RABBITMQ_QUEUE_INBOUND", "crm.messages.inbound"),
            "webhooks": os.getenv("RABBITMQ_QUEUE_WEBHOOKS", "crm.webhooks"),
        }

        # Redis
        self.REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
        self.REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
        self.REDIS_USERNAME: Optional[str] = os.getenv("REDIS_USERNAME") or None
        self.REDIS_PASSWORD: Optional[str] = os.getenv("REDIS_PASSWORD") or None

        # Application Configuration
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.API_TIMEOUT: int = int(os.getenv("API_TIMEOUT", "15"))

    def validate_required_vars(self) -> List[str]:
        """
        Valida que las variables de entorno requeridas estén configuradas.

        Returns:
            Lista de variables faltantes (vacía si todas están configuradas)
        """
        required_vars = {
            "EVOLUTION_API_URL": self.EVOLUTION_API_URL,
            "EVOLUTION_API_KEY": self.EVOLUTION_API_KEY,
            "CRM_BASE_URL": self.CRM_BASE_URL,
            "FIREBASE_CREDENTIALS_PATH": self.FIREBASE_CREDENTIALS_PATH or self.FIREBASE_PROJECT_ID,
            "EVO_AI_DATABASE_URL": self.EVO_AI_DATABASE_URL or self.EVO_AI_DB_HOST,
        }

        missing_vars = [var for var, value in required_vars.items() if not value]
        return missing_vars

    def optional_vars(self) -> Dict[str, str]:
        """Variables opcionales con su descripción, para el reporte de entorno."""
        return {
            "EVOLUTION_WEBHOOK_URL": "URL pública del webhook del CRM",
            "EVO_AI_API_KEY": "Clave x-api-key de la API A2A",
            "EVO_AI_DEFAULT_CLIENT_ID": "client_id para vincular agentes huérfanos",
            "RABBITMQ_URL": "URL AMQP de RabbitMQ",
            "REDIS_PASSWORD": "Contraseña de Redis",
        }

    def get_evolution_headers(self) -> Dict[str, str]:
        """Retorna los headers para las llamadas a la Evolution API."""
        return {
            "apikey": self.EVOLUTION_API_KEY,
            "Content-Type": "application/json"
        }

    def get_crm_headers(self) -> Dict[str, str]:
        """Retorna los headers para las llamadas a la API del CRM."""
        return {"Content-Type": "application/json"}

    def get_a2a_headers(self) -> Dict[str, str]:
        """Retorna los headers para los endpoints A2A del CRM."""
        return {
            "Content-Type": "application/json",
            "x-api-key": self.EVO_AI_API_KEY
        }

    def get_postgres_dsn(self) -> str:
        """
        Construye el DSN del Postgres de Evo AI.

        Usa EVO_AI_DATABASE_URL si existe; si no, las variables EVO_AI_DB_*.
        """
        if self.EVO_AI_DATABASE_URL:
            return self.EVO_AI_DATABASE_URL
        if not self.EVO_AI_DB_HOST:
            return ""
        password = quote_plus(self.EVO_AI_DB_PASSWORD)
        return (
            f"postgresql://{self.EVO_AI_DB_USER}:{password}@{self.EVO_AI_DB_HOST}:"
            f"{self.EVO_AI_DB_PORT}/{self.EVO_AI_DB_NAME}?sslmode={self.EVO_AI_DB_SSLMODE}"
        )


# Instancia global de configuración
settings = Settings()
