# FILE: scripts/openapi_dump.py
# Usage: python scripts/openapi_dump.py [admin]
# Prints the public (default) or admin plane's OpenAPI document.
import json, sys

from atg.admin_http import create_admin_app
from atg.runtime import build_runtime
from atg.service_http import ServiceHttpConfig, create_app

rt = build_runtime()
if len(sys.argv) > 1 and sys.argv[1] == "admin":
    app = create_admin_app(rt, admin_token="")
else:
    app = create_app(rt, http_config=ServiceHttpConfig(enable_docs=True))
print(json.dumps(app.openapi(), indent=2))
