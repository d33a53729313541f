"""Core Pydantic models for the automation engine."""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, Field, field_validator, model_validator


NODE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_.:-]+$')


class NodeKind(str, Enum):
    """Closed set of node types a workflow may contain."""
    TRIGGER_FORM = "trigger:form"
    TRIGGER_FILE = "trigger:file"
    TRIGGER_EMAIL = "trigger:email"
    TRIGGER_DATABASE = "trigger:database"
    TRIGGER_SCHEDULE = "trigger:schedule"
    TRIGGER_WEBHOOK = "trigger:webhook"
    ACTION_ECHO = "action:echo"
    ACTION_LOGGER = "action:logger"
    ACTION_TRANSFORM = "action:transform"
    ACTION_DELAY = "action:delay"
    LOGIC_CONDITION = "logic:condition"
    LOGIC_ROUTER = "logic:router"
    LOGIC_MERGE = "logic:merge"

    @property
    def is_trigger(self) -> bool:
        return self.value.startswith("trigger:")


class RunStatus(str, Enum):
    """Run lifecycle states. RUNNING -> SUCCEEDED | FAILED only."""
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self != RunStatus.RUNNING


class StepStatus(str, Enum):
    """Terminal outcome of a single node within a run."""
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"

    @property
    def is_failure(self) -> bool:
        return self in (StepStatus.ERROR, StepStatus.TIMEOUT)


class RunEventType(str, Enum):
    """Events emitted to the realtime publisher."""
    RUN_CREATED = "runCreated"
    STEP_COMPLETED = "stepCompleted"
    RUN_COMPLETED = "runCompleted"


class NodePosition(BaseModel):
    """Editor position; carried but ignored by execution."""
    x: float = 0
    y: float = 0


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    id: str = Field(..., description="Unique identifier for the node")
    type: NodeKind = Field(..., description="Node kind tag")
    data: Dict[str, Any] = Field(default_factory=dict, description="Handler-specific configuration")
    position: Optional[NodePosition] = Field(None, description="UI position")
    required: bool = Field(True, description="An error or timeout here fails the run")
    timeout: Optional[float] = Field(None, description="Timeout in seconds for node execution")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not NODE_ID_PATTERN.match(id_value.strip()):
            raise ValueError("Node ID may contain only letters, digits and _ . : -")
        return id_value.strip()

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, timeout):
        """Ensure timeout is positive if specified."""
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be positive")
        return timeout


class EdgeDefinition(BaseModel):
    """Definition of an edge between workflow nodes."""
    id: str = Field(..., description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    source_handle: Optional[str] = Field(None, alias="sourceHandle", description="Branch output of the source")
    target_handle: Optional[str] = Field(None, alias="targetHandle", description="Join input of the target")

    model_config = {"populate_by_name": True}

    @model_validator(mode='after')
    def validate_edge(self):
        """Validate edge definition."""
        if self.source == self.target:
            raise ValueError(f"Self-referencing edge not allowed: {self.source}")
        return self


class WorkflowDefinition(BaseModel):
    """A workflow graph as stored by the management layer."""
    id: Optional[str] = Field(None, description="Workflow identifier")
    name: str = Field(..., description="Name of the workflow")
    active: bool = Field(True, description="Inactive workflows reject every trigger")
    schedule: Optional[str] = Field(None, description="Cron expression for schedule triggers")
    nodes: List[NodeDefinition] = Field(..., description="Ordered nodes")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="Edges connecting nodes")
    owner: Optional[str] = Field(None, description="Owning principal")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @model_validator(mode='after')
    def validate_graph_structure(self):
        """Validate node ids, edge references, trigger presence and acyclicity."""
        if not self.nodes:
            raise ValueError("Workflow must contain at least one node")

        node_ids = [node.id for node in self.nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")

        known = set(node_ids)
        for edge in self.edges:
            if edge.source not in known:
                raise ValueError(f"Edge {edge.id} references non-existent source node: {edge.source}")
            if edge.target not in known:
                raise ValueError(f"Edge {edge.id} references non-existent target node: {edge.target}")

        if not any(node.type.is_trigger for node in self.nodes):
            raise ValueError("Workflow must contain at least one trigger node")

        for edge in self.edges:
            target = self.get_node(edge.target)
            if target.type.is_trigger:
                raise ValueError(f"Trigger node {target.id} cannot have incoming edges")

        cycle = self._find_cycle()
        if cycle:
            raise ValueError(f"Workflow graph contains a cycle through: {', '.join(cycle)}")

        return self

    def _find_cycle(self) -> List[str]:
        """Return nodes left over by Kahn's algorithm (empty when acyclic)."""
        indegree = {node.id: 0 for node in self.nodes}
        outgoing: Dict[str, List[str]] = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            indegree[edge.target] += 1
            outgoing[edge.source].append(edge.target)

        ready = [node_id for node_id, degree in indegree.items() if degree == 0]
        visited = 0
        while ready:
            current = ready.pop()
            visited += 1
            for target in outgoing[current]:
                indegree[target] -= 1
                if indegree[target] == 0:
                    ready.append(target)

        if visited == len(indegree):
            return []
        return sorted(node_id for node_id, degree in indegree.items() if degree > 0)

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def trigger_nodes(self, kind: Optional[NodeKind] = None) -> List[NodeDefinition]:
        return [
            node for node in self.nodes
            if node.type.is_trigger and (kind is None or node.type == kind)
        ]

    def reachable_from(self, node_id: str) -> Set[str]:
        """Find all nodes reachable from the given node (inclusive)."""
        edge_map: Dict[str, List[str]] = {}
        for edge in self.edges:
            edge_map.setdefault(edge.source, []).append(edge.target)

        reachable = {node_id}
        queue = [node_id]
        while queue:
            current = queue.pop(0)
            for neighbor in edge_map.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)
        return reachable


class TriggerMetadata(BaseModel):
    """Where and when a trigger event arrived."""
    source_ip: Optional[str] = Field(None, alias="sourceIP")
    received_at: datetime = Field(default_factory=datetime.utcnow, alias="receivedAt")
    source_type: str = Field(..., alias="sourceType")
    extra: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


class TriggerPayload(BaseModel):
    """Canonical event handed from a trigger adapter to the executor."""
    workflow_id: str = Field(..., alias="workflowId")
    trigger_node_id: str = Field(..., alias="triggerNodeId")
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: TriggerMetadata

    model_config = {"populate_by_name": True}

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe representation stored on the run."""
        return self.model_dump(mode="json", by_alias=True)


class TriggerAcknowledgement(BaseModel):
    """Synchronous response to an admitted trigger event."""
    accepted: bool = True
    run_id: str
    workflow_id: str
    trigger_node_id: str
    message: str = "Trigger accepted"
    file_info: Optional[Dict[str, Any]] = Field(None, alias="fileInfo")

    model_config = {"populate_by_name": True}


class StepRecord(BaseModel):
    """Recorded outcome of one node within a run."""
    node_id: str
    node_type: Optional[str] = None
    status: StepStatus
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: datetime = Field(default_factory=datetime.utcnow)
    sequence: Optional[int] = None


class WorkflowRun(BaseModel):
    """One execution instance of a workflow."""
    id: str
    workflow_id: str
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    trigger: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    steps: List[StepRecord] = Field(default_factory=list)


class RunPage(BaseModel):
    """A page of runs for list queries."""
    items: List[WorkflowRun]
    total: int
    page: int
    page_size: int


class RunEvent(BaseModel):
    """Canonical realtime event shape."""
    event: RunEventType
    run_id: str = Field(..., alias="runId")
    workflow_id: str = Field(..., alias="workflowId")
    status: str
    node_id: Optional[str] = Field(None, alias="nodeId")
    progress: Optional[Dict[str, int]] = None
    error: Optional[Dict[str, Any]] = None
    result: Optional[Any] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    model_config = {"populate_by_name": True}

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
