"""Keeps the user data secret in line with the private key across key rotations."""
import logging

from kubernetes.client import CoreV1Api
from kubernetes.client.rest import ApiException

from winnodectl.controllers import secrets
from winnodectl.errors import ConfigurationError, SecretNotFoundError, TransientError
from winnodectl.instance import PlatformType
from winnodectl.metadata import PUB_KEY_HASH_ANNOTATION, WINDOWS_NODE_SELECTOR
from winnodectl.nodeconfig.nodeconfig import create_pub_key_hash_annotation

logger = logging.getLogger("winnodectl.controllers.userdata")


class UserDataReconciler:
    """Rewrites the ``windows-user-data`` secret when the private key changes.

    Windows nodes configured with another key lose their key hash annotation
    before the secret is rewritten, so the machine controller replaces them.
    """

    def __init__(self, core_api: CoreV1Api, key_namespace: str, user_data_namespace: str,
                 platform: PlatformType):
        self.core_api = core_api
        self.key_namespace = key_namespace
        self.user_data_namespace = user_data_namespace
        self.platform = platform

    def reconcile(self) -> bool:
        """Bring the user data secret up to date.

        Returns:
            bool: True if the secret was written

        Raises:
            TransientError: On API errors
            ConfigurationError: If the private key cannot be parsed
        """
        try:
            key = secrets.get_private_key(self.core_api, self.key_namespace)
        except SecretNotFoundError as e:
            logger.warning(f"Not syncing user data: {e}")
            return False
        pub_key = secrets.authorized_key(secrets.create_signer(key))

        try:
            secrets.validate_user_data(self.core_api, self.user_data_namespace, self.platform, pub_key)
            return False
        except ConfigurationError as e:
            logger.info(f"User data does not match the private key: {e}")

        self._clear_stale_key_annotations(pub_key)
        return secrets.sync_user_data_secret(self.core_api, self.user_data_namespace, self.platform, pub_key)

    def _clear_stale_key_annotations(self, pub_key: str) -> None:
        expected = create_pub_key_hash_annotation(pub_key)
        try:
            nodes = self.core_api.list_node(label_selector=WINDOWS_NODE_SELECTOR).items
        except ApiException as e:
            raise TransientError(f"unable to list Windows nodes: {e.reason}") from e

        for node in nodes:
            name = node.metadata.name
            current = (node.metadata.annotations or {}).get(PUB_KEY_HASH_ANNOTATION)
            if not current or current == expected:
                continue
            try:
                self.core_api.patch_node(name, {"metadata": {"annotations": {PUB_KEY_HASH_ANNOTATION: ""}}})
            except ApiException as e:
                raise TransientError(f"error clearing public key annotation on node {name}: {e.reason}") from e
            logger.info(f"Cleared public key annotation on node {name}")
