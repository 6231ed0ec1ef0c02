"""Fuentes de datos del hub OEE.

- local_file.py: ficheros JSON locales
- http_source.py: API REST genérica y API remota autenticada
- telemetry.py: muestras en vivo del TelemetryClient
- registry.py: factory y registro dataset → fuente
- config_loader.py: declaración de datasets en YAML
"""
