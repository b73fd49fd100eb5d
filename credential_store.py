#!/usr/bin/env python3
"""
Credential Store for BUNNY Garage

Persists one connection per provider (status, API key, selected model) and
the compare-mode response history as JSON files in the data directory.
The orchestration core only sees the read-only CredentialStore interface.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from input_validation import ValidationError, validate_connection_record

MAX_HISTORY_ENTRIES = 200


def default_data_dir() -> Path:
    return Path(os.getenv("BUNNY_HOME", str(Path.home() / ".bunny")))


@dataclass
class Connection:
    """Stored state for one provider."""

    provider_id: str
    status: str  # 'connected', 'connecting', 'disconnected', 'error'
    api_key: Optional[str] = None
    model: Optional[str] = None


class CredentialStore(ABC):
    """Read-only view of stored connections, injected into the orchestration core."""

    @abstractmethod
    def get(self, provider_id: str) -> Optional[Connection]:
        pass


class ConnectionStore(CredentialStore):
    """Manages stored provider connections and response history."""

    def __init__(self, data_dir: Optional[Path] = None):
        """
        Initialize the store and load any saved connections.

        Args:
            data_dir: Directory holding connections.json and history.json
        """
        self.data_dir = Path(data_dir) if data_dir else default_data_dir()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.connections_file = self.data_dir / "connections.json"
        self.history_file = self.data_dir / "history.json"
        self.connections: Dict[str, Connection] = {}
        self.load_connections()

    def load_connections(self) -> None:
        """Load saved connections, skipping malformed records."""
        self.connections = {}
        if not self.connections_file.exists():
            return
        try:
            with open(self.connections_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logging.error(f"Failed to load connections: {e}")
            return

        if not isinstance(data, dict):
            logging.error("Failed to load connections: expected a JSON object")
            return

        for provider_id, record in data.items():
            try:
                validate_connection_record(record)
            except ValidationError as e:
                logging.warning(f"Skipping stored connection '{provider_id}': {e}")
                continue
            self.connections[provider_id] = Connection(
                provider_id=provider_id,
                status=record["status"],
                api_key=record.get("api_key"),
                model=record.get("model"),
            )
        logging.info(f"Loaded {len(self.connections)} stored connections")

    def save_connections(self) -> None:
        """Write all connections to disk, readable by the owner only."""
        data = {
            provider_id: {k: v for k, v in asdict(conn).items() if k != "provider_id"}
            for provider_id, conn in self.connections.items()
        }
        try:
            with open(self.connections_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.chmod(self.connections_file, 0o600)
            logging.debug(f"Saved connections to {self.connections_file}")
        except OSError as e:
            logging.error(f"Failed to save connections: {e}")

    def get(self, provider_id: str) -> Optional[Connection]:
        return self.connections.get(provider_id)

    def set_connection(self, connection: Connection) -> None:
        self.connections[connection.provider_id] = connection
        self.save_connections()

    def remove_connection(self, provider_id: str) -> bool:
        """Forget a provider. Returns False if it was not stored."""
        if provider_id not in self.connections:
            return False
        del self.connections[provider_id]
        self.save_connections()
        return True

    def connected_providers(self) -> List[str]:
        return [
            provider_id
            for provider_id, conn in self.connections.items()
            if conn.status == "connected"
        ]

    def load_history(self) -> List[Dict[str, Any]]:
        if not self.history_file.exists():
            return []
        try:
            with open(self.history_file, "r", encoding="utf-8") as f:
                entries = json.load(f)
        except (OSError, ValueError) as e:
            logging.error(f"Failed to load response history: {e}")
            return []
        return entries if isinstance(entries, list) else []

    def record_response(self, prompt: str, response: Any) -> None:
        """Append one compare-mode result (a ProviderResponse) to the history."""
        entries = self.load_history()
        entries.append(
            {
                "recorded_at": datetime.now().isoformat(),
                "prompt": prompt,
                "provider": response.provider_name,
                "content": response.content,
                "error": response.error,
                "tokens": response.tokens,
                "model": response.model,
            }
        )
        entries = entries[-MAX_HISTORY_ENTRIES:]
        try:
            with open(self.history_file, "w", encoding="utf-8") as f:
                json.dump(entries, f, indent=2)
        except OSError as e:
            logging.error(f"Failed to save response history: {e}")

    def clear_history(self) -> None:
        """Delete the stored response history."""
        if self.history_file.exists():
            self.history_file.unlink()
        logging.info("Cleared response history")

    def reset_all(self) -> None:
        """Erase every stored connection and the response history."""
        self.connections = {}
        if self.connections_file.exists():
            self.connections_file.unlink()
        self.clear_history()
        logging.info("All settings have been reset")
