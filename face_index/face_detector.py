"""
Face Detection Module

Detects faces in frames with OpenCV Haar cascades and turns detector
rectangles into face crops ready for the embedding service. Rectangles from
any detector go through the geometry normalizer before cropping.
"""

import cv2
import numpy as np
import logging
from dataclasses import dataclass
from typing import List, Optional, Dict, Any, Tuple

from .geometry import RawRect, DetectionRect, normalize_rect, DEFAULT_PADDING
from .errors import DegenerateRegion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawDetection:
    """One detector hit: rectangle in the detector's own convention plus score."""

    rect: RawRect
    confidence: float


def decode_image(image_bytes: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes into a BGR array, or None if unreadable."""
    if not image_bytes:
        return None
    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    return cv2.imdecode(buffer, cv2.IMREAD_COLOR)


def encode_jpeg(image: np.ndarray, quality: int = 95) -> bytes:
    """Encode a BGR array as JPEG bytes."""
    ok, buffer = cv2.imencode('.jpg', image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buffer.tobytes()


class FaceDetector:
    """Haar cascade face detection with normalized cropping."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize face detector.

        Args:
            config: Configuration dictionary with face_detection and geometry settings
        """
        self.config = config.get('face_detection', {})
        self.geometry_config = config.get('geometry', {})

        self.min_face_size = self.config.get('min_face_size', 30)
        self.scale_factor = self.config.get('scale_factor', 1.1)
        self.min_neighbors = self.config.get('min_neighbors', 5)

        self.min_confidence = self.geometry_config.get('min_confidence', 0.5)
        self.padding_fraction = self.geometry_config.get('padding_fraction', DEFAULT_PADDING)
        self.face_size = tuple(self.geometry_config.get('face_size', (224, 224)))

        self.detector = cv2.CascadeClassifier(
            cv2.data.haarcascades + 'haarcascade_frontalface_default.xml'
        )

        logger.info("Face detector initialized with method: haar")

    def detect(self, frame: np.ndarray) -> List[RawDetection]:
        """
        Detect faces in a frame.

        Args:
            frame: Input frame as numpy array (BGR format)

        Haar cascades report no score, so every hit carries confidence 1.0;
        min_confidence is enforced by extract_face.

        Returns:
            Detections, largest face first
        """
        if frame is None or frame.size == 0:
            return []

        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY) if frame.ndim == 3 else frame

        faces_rect = self.detector.detectMultiScale(
            gray,
            scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors,
            minSize=(self.min_face_size, self.min_face_size)
        )

        detections = [
            RawDetection(rect=RawRect(float(x), float(y), float(w), float(h)), confidence=1.0)
            for (x, y, w, h) in faces_rect
        ]
        detections.sort(key=lambda d: d.rect.width * d.rect.height, reverse=True)

        logger.debug(f"Detected {len(detections)} faces")
        return detections

    def normalize(self, frame: np.ndarray, raw_rect: RawRect,
                  confidence: float = 1.0) -> DetectionRect:
        """Normalize a detector rectangle against this frame's dimensions."""
        frame_height, frame_width = frame.shape[:2]
        return normalize_rect(raw_rect, frame_width, frame_height,
                              padding_fraction=self.padding_fraction,
                              confidence=confidence)

    def crop_face(self, frame: np.ndarray, rect: DetectionRect) -> np.ndarray:
        """
        Crop a normalized rectangle out of the frame and resize it.

        Raises:
            DegenerateRegion: If the crop has no pixels
        """
        x1, y1, x2, y2 = rect.crop_box()
        face_crop = frame[y1:y2, x1:x2]
        if face_crop.size == 0:
            raise DegenerateRegion(f"Empty crop for box {(x1, y1, x2, y2)}")

        return cv2.resize(face_crop, self.face_size, interpolation=cv2.INTER_AREA)

    def extract_face(self, frame: np.ndarray, raw_rect: RawRect,
                     confidence: float = 1.0) -> Tuple[bytes, DetectionRect]:
        """
        Normalize, crop and JPEG-encode one face.

        Args:
            frame: Source frame (BGR)
            raw_rect: Detector rectangle in any supported convention
            confidence: Detector score

        Returns:
            (jpeg_bytes, normalized rectangle)
        """
        if confidence < self.min_confidence:
            raise DegenerateRegion(
                f"Detection confidence {confidence:.2f} below {self.min_confidence:.2f}"
            )

        rect = self.normalize(frame, raw_rect, confidence)
        face = self.crop_face(frame, rect)
        return encode_jpeg(face), rect

    def extract_faces(self, frame: np.ndarray) -> List[Tuple[bytes, DetectionRect]]:
        """Detect and extract every usable face in a frame."""
        faces = []
        for detection in self.detect(frame):
            try:
                faces.append(self.extract_face(frame, detection.rect, detection.confidence))
            except DegenerateRegion as e:
                logger.debug(f"Detection discarded: {e}")
        return faces
