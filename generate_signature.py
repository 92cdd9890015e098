# Sign a webhook body the way the ERP does, for manual curl testing:
#   python generate_signature.py '{"event":"stock.updated","eventId":"t-1","data":{"produto":{"id":123},"saldoVirtualTotal":4}}'
#   curl -H "X-Signature-256: <output>" -d '<same body>' http://localhost:8000/webhooks/erp
import sys

from catalog_sync.config import settings
from catalog_sync.webhooks.erp_webhook import sign_body

body = (sys.argv[1] if len(sys.argv) > 1 else '{"event":"product.updated","eventId":"manual-1","data":{"id":123}}').encode("utf-8")
secret = settings.ERP_WEBHOOK_SECRET
if not secret:
    sys.exit("ERP_WEBHOOK_SECRET is not set")

print(sign_body(secret, body))
