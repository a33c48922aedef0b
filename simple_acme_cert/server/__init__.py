# Copyright 2025 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""A per-attempt responder for the ACME HTTP-01 challenge, built on the `acme` library's standalone server."""
import logging
import threading

from acme import challenges
from acme import standalone

# Constants and Variables
REQUEST_TIMEOUT = 30
logger = logging.getLogger(__name__)


class ChallengeServer:
    """
    An HTTP-01 server owned by a single authorization attempt. Each instance has its own listener and resource set,
    so nothing is registered process-wide.
    """

    def __init__(
            self,
            chall: challenges.HTTP01,
            response: challenges.HTTP01Response,
            validation: str,
            port: int = 80,
            host: str = ""
    ) -> None:
        """
        Args:
            chall (acme.challenges.HTTP01): The challenge to answer.
            response (acme.challenges.HTTP01Response): The response sent to the ACME server for this challenge.
            validation (str): The key authorization to serve as the response body.
            port (int): The TCP port to listen on.
            host (str): The address to bind. All interfaces when empty.
        """
        self.resource = standalone.HTTP01RequestHandler.HTTP01Resource(
            chall=chall, response=response, validation=validation
        )
        self.host = host
        self.port = port
        self._httpd = None
        self._thread = None

    @property
    def path(self) -> str:
        """The well-known path the key authorization is served at."""
        return self.resource.chall.path

    @property
    def running(self) -> bool:
        """Whether the listener is currently accepting connections."""
        return self._httpd is not None

    @property
    def address(self) -> tuple:
        """The bound (host, port) pair. Useful when binding to port 0."""
        return self._httpd.socket.getsockname()[:2] if self._httpd else (self.host, self.port)

    def start(self) -> None:
        """
        Binds the listener and serves requests from a background thread.

        Raises:
            OSError: When the port cannot be bound.
        """
        if self.running:
            return

        self._httpd = standalone.HTTP01Server((self.host, self.port), {self.resource}, timeout=REQUEST_TIMEOUT)
        self._thread = threading.Thread(target=self._httpd.serve_forever, name="http-01-responder", daemon=True)
        self._thread.start()
        logger.info("HTTP challenge server listening on port %s for %s", self.address[1], self.path)

    def stop(self) -> None:
        """Stops serving and closes the listener. Safe to call more than once."""
        if not self.running:
            return

        self._httpd.shutdown()
        self._thread.join()
        self._httpd.server_close()
        self._httpd = None
        self._thread = None
        logger.info("HTTP challenge server stopped")

    def __enter__(self) -> "ChallengeServer":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
