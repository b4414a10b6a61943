"""
Constants and configuration values for the diagram extraction workflow.
"""

# Minimum diagram edge in pixels accepted by the validator
DEFAULT_MIN_DIAGRAM_SIZE = 10

# Per-type validation rules (sizes in px, aspect = width / height)
DIAGRAM_TYPE_RULES = {
    'graph':      {'min_width': 100, 'min_height': 80,  'aspect_ratio': (0.5, 3.0), 'min_confidence': 0.6},
    'table':      {'min_width': 150, 'min_height': 60,  'aspect_ratio': (1.5, 8.0), 'min_confidence': 0.7},
    'flowchart':  {'min_width': 80,  'min_height': 100, 'aspect_ratio': (0.3, 2.0), 'min_confidence': 0.5},
    'scientific': {'min_width': 120, 'min_height': 120, 'aspect_ratio': (0.5, 2.0), 'min_confidence': 0.6},
    'geometric':  {'min_width': 60,  'min_height': 60,  'aspect_ratio': (0.5, 2.0), 'min_confidence': 0.7},
    'circuit':    {'min_width': 100, 'min_height': 80,  'aspect_ratio': (0.8, 3.0), 'min_confidence': 0.6},
    'map':        {'min_width': 150, 'min_height': 100, 'aspect_ratio': (0.7, 2.5), 'min_confidence': 0.5},
    'other':      {'min_width': 50,  'min_height': 50,  'aspect_ratio': (0.2, 5.0), 'min_confidence': 0.4},
}

# Sanitizer shape targets for type-specific rules
TABLE_MIN_ASPECT_RATIO = 1.2
TABLE_TARGET_ASPECT_RATIO = 1.5
GRAPH_ASPECT_RANGE = (0.5, 2.5)
GRAPH_TARGET_ASPECT_RATIO = 1.2
GEOMETRIC_ASPECT_TOLERANCE = 0.3

# Pipeline defaults
DEFAULT_PIPELINE_CONFIG = {
    'batch_size': 3,
    'max_concurrency': 3,
    'max_retries': 3,
    'retry_delay': 2.0,
    'retry_backoff': 'fixed',
    'max_retry_delay': 30.0,
    'max_file_size_mb': 50,
    'supported_formats': ['application/pdf'],
    'enable_diagram_detection': True,
    'enable_database_storage': False,
}

RETRY_BACKOFF_MODES = ('fixed', 'exponential')

# Page images are stored under this key
PAGE_IMAGE_KEY_FORMAT = "{test_id}_page_{page_number}"

# Memory thresholds (fraction of system memory in use)
MEMORY_THRESHOLDS = {
    'warning': 0.8,
    'critical': 0.9,
    'emergency': 0.95,
}

DEFAULT_CHUNK_SIZE = 1024 * 1024

# Prompt for the vision detection API
DETECTION_PROMPT = """You are analysing one page of a scanned question paper.
Identify every question on the page and every diagram (graph, flowchart,
scientific figure, geometric figure, table, circuit, map or other figure).

Return ONLY a JSON object with this shape:
{
  "questions": [
    {"id": "q1", "text": "question text", "confidence": 0.95,
     "diagram_indices": [0]}
  ],
  "diagrams": [
    {"coordinates": {"x1": 0, "y1": 0, "x2": 0, "y2": 0},
     "type": "graph", "confidence": 0.9, "description": "short description"}
  ]
}

Coordinates are pixel positions on the page image, which is {width}x{height}
pixels, origin at the top-left corner. Use an empty list when there are no
diagrams."""

DEFAULT_DETECTION_PARAMS = {
    'max_tokens': 4096,
    'temperature': 0.0,
}

# Ordered recovery strategies per error category
RECOVERY_STRATEGIES = {
    'network': ['retry_with_backoff', 'use_cached_result'],
    'file': ['alternate_parser'],
    'processing': ['fallback_chain', 'reduce_quality'],
    'validation': ['auto_fix_json', 'default_values'],
    'memory': ['light_cleanup', 'aggressive_cleanup'],
    'security': [],
    'system': [],
}
