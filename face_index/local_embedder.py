"""
Local Embedding Module

Computes face embeddings in-process with FaceNet (facenet-pytorch) or the
face_recognition library (dlib ResNet), for deployments without a remote
embedding service.
"""

import io
import numpy as np
import logging
from typing import Dict, Any
import face_recognition
from facenet_pytorch import MTCNN, InceptionResnetV1
import torch
from PIL import Image, UnidentifiedImageError

from .embedding_client import EmbeddingClient
from .errors import EmbeddingError

logger = logging.getLogger(__name__)


class LocalEmbeddingClient(EmbeddingClient):
    """Generate face embeddings with a local model."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the local embedding model.

        Args:
            config: Configuration dictionary with embedding settings
        """
        self.config = config.get('embedding', {})
        self.model_name = self.config.get('backend', 'facenet')
        self.normalization = self.config.get('normalization', True)
        self.device = torch.device('cuda' if torch.cuda.is_available() and
                                   self.config.get('use_gpu', False)
                                   else 'cpu')
        self.model = None
        self.mtcnn = None

        if self.model_name == 'facenet':
            self._initialize_facenet()
        elif self.model_name != 'face_recognition':
            raise ValueError(f"Unsupported embedding model: {self.model_name}")

        logger.info(f"Local embedding client initialized with model: {self.model_name}")

    def _initialize_facenet(self):
        """Load pre-trained FaceNet and its MTCNN face aligner."""
        self.model = InceptionResnetV1(pretrained='vggface2').eval().to(self.device)
        self.mtcnn = MTCNN(
            image_size=160, margin=0, min_face_size=20,
            thresholds=[0.6, 0.7, 0.7], factor=0.709, post_process=True,
            device=self.device
        )
        logger.info("FaceNet model loaded successfully")

    def embed(self, image_bytes: bytes, content_type: str = 'image/jpeg') -> np.ndarray:
        try:
            image = Image.open(io.BytesIO(image_bytes)).convert('RGB')
        except (UnidentifiedImageError, OSError) as e:
            raise EmbeddingError(f"Unreadable {content_type} image: {e}") from e

        if self.model_name == 'facenet':
            embedding = self._facenet_embedding(image)
        else:
            embedding = self._face_recognition_embedding(image)

        if self.normalization:
            norm = np.linalg.norm(embedding)
            if norm > 0:
                embedding = embedding / norm

        return embedding.astype(np.float32)

    def _facenet_embedding(self, image: Image.Image) -> np.ndarray:
        face_tensor = self.mtcnn(image)
        if face_tensor is None:
            raise EmbeddingError("No face detected")

        if face_tensor.dim() == 3:
            face_tensor = face_tensor.unsqueeze(0)

        with torch.no_grad():
            embedding = self.model(face_tensor.to(self.device))
        return embedding.cpu().numpy().flatten()

    def _face_recognition_embedding(self, image: Image.Image) -> np.ndarray:
        encodings = face_recognition.face_encodings(np.array(image))
        if len(encodings) == 0:
            raise EmbeddingError("No face detected")
        # First face wins when several are present
        return np.asarray(encodings[0])

    def health_check(self) -> bool:
        if self.model_name == 'facenet':
            return self.model is not None and self.mtcnn is not None
        return True
