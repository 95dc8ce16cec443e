# ---------------------------------------------------------------------------- #

from __future__ import annotations

from datetime import timedelta

# ---------------------------------------------------------------------------- #

KEY_NODE = "kubernetes.io/hostname"
"""Node label used to express volume node affinity."""

NODE_DEFAULT_NON_LISTED_NODES = "DEFAULT_PATH_FOR_NON_LISTED_NODES"
"""Node identifier in 'nodePathMap' whose paths serve every node that is not
listed explicitly."""

DEFAULT_CMD_TIMEOUT_SECONDS = 120
"""Number of seconds a helper pod may take to succeed, unless the config file
sets a positive 'cmdTimeoutSeconds'."""

CONFIG_FILE_CHECK_INTERVAL = timedelta(seconds=30)
"""How often the config file is re-read."""

HELPER_POD_POLL_INTERVAL = timedelta(seconds=1)
"""Amount of time to wait between two reads of a helper pod's status."""

HELPER_POD_NAME_MAX_LENGTH = 128

DEFAULT_MODEL_MOUNT = "/model"
"""Absolute path, in the context of a model cache helper pod, under which the
volume's parent directory is mounted."""

DEFAULT_VOLUME_TYPE = "hostPath"

HELPER_SCRIPT_DIR = "/script"
HELPER_DATA_VOLUME_NAME = "data"
HELPER_SCRIPT_VOLUME_NAME = "script"

ENV_VOL_DIR = "VOL_DIR"
ENV_VOL_MODE = "VOL_MODE"
ENV_VOL_SIZE = "VOL_SIZE_BYTES"
ENV_REGISTRY = "REGISTRY"
ENV_STORE_TYPE = "STORAGE_TYPE"
ENV_REPO_TAG = "REPO_TAG"

# storage class parameters

PARAM_MODEL_CACHE = "modelCache"
PARAM_REGISTRY = "registry"
PARAM_STORE_TYPE = "storeType"
PARAM_PATH_PATTERN = "pathPattern"

# storage class and claim annotations

ANNOTATION_DEFAULT_VOLUME_TYPE = "defaultVolumeType"
ANNOTATION_VOLUME_TYPE = "volumeType"
ANNOTATION_MODEL_REGISTRY = "model/registry"

ANNOTATION_SELECTED_NODE = "volume.kubernetes.io/selected-node"
ANNOTATION_PROVISIONED_BY = "pv.kubernetes.io/provisioned-by"

KOPF_FINALIZER = "modelcache.io/kopf"
"""Finalizer for kopf to use instead of its default one."""

CONTROLLER_RETRY_DELAY = timedelta(seconds=5)
"""Amount of time to wait before retrying a failed provisioning or deletion,
or a failed watch."""

# ---------------------------------------------------------------------------- #
