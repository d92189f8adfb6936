from __future__ import annotations

from clinic_sync.bootstrap.exception_handler import ejecutar_con_guardia
from clinic_sync.entrypoints.main import main

raise SystemExit(ejecutar_con_guardia(main))
