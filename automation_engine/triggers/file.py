"""File upload trigger."""

import base64
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from ..core.exceptions import TriggerValidationError
from ..core.logging import get_logger
from ..models.core import NodeKind, TriggerAcknowledgement
from .base import TriggerAdapter, header_value
from .file_scanner import validate_upload

logger = get_logger(__name__)

TOKEN_HEADER = "X-Upload-Token"
TOKEN_FIELD = "uploadToken"


class FileTriggerAdapter(TriggerAdapter):
    """Admits multipart uploads after authentication and content validation.

    A rejected file never reaches the dispatcher. The SHA-256 of every accepted
    file is logged and returned for audit.
    """

    node_kind = NodeKind.TRIGGER_FILE
    source_type = "file"

    def __init__(self, repository, dispatcher, gate=None, default_max_size: int = 10 * 1024 * 1024):
        super().__init__(repository, dispatcher, gate)
        self.default_max_size = default_max_size

    def handle(self, workflow_id: str, filename: Optional[str], content: Optional[bytes],
               mimetype: Optional[str] = None, fields: Optional[Dict[str, Any]] = None,
               headers: Optional[Mapping[str, str]] = None, query_token: Optional[str] = None,
               source_ip: Optional[str] = None, trigger_node_id: Optional[str] = None) -> TriggerAcknowledgement:
        workflow = self.resolve_workflow(workflow_id)
        node = self.locate_node(workflow, trigger_node_id)

        fields = dict(fields or {})
        token = header_value(headers, TOKEN_HEADER) or fields.pop(TOKEN_FIELD, None) or query_token
        fields.pop(TOKEN_FIELD, None)
        self.gate.require_shared_token(token, node.data.get(TOKEN_FIELD), workflow.id, node.id)

        if not filename or content is None:
            raise self.reject("No file was uploaded", "NO_FILE", workflow.id)

        max_size = int(node.data.get("maxFileSize") or self.default_max_size)
        try:
            file_info = validate_upload(filename, mimetype, content, max_size, node.data.get("allowedFileTypes"))
        except TriggerValidationError as e:
            logger.warning(f"file trigger rejected for workflow {workflow.id}: {e.error_code}")
            e.add_context(workflow_id=workflow.id)
            raise

        file_info["uploadedAt"] = datetime.utcnow().isoformat()
        logger.info(f"Accepted upload {filename} ({file_info['size']} bytes, sha256 {file_info['hash']}) "
                    f"for workflow {workflow.id}")

        data = {"file": dict(file_info), "fields": fields}
        if node.data.get("includeContent"):
            data["file"]["content"] = base64.b64encode(content).decode("ascii")

        return self.admit(workflow, node, data, source_ip=source_ip, file_info=file_info)
