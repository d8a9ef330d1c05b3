"""
Image cleanup ahead of OCR.

Scanned and photographed lab reports are often tilted, unevenly lit or
faint. Tesseract reads grayscale, straight, well-contrasted text best, so
every image goes through:
- Grayscale conversion and upscaling of small captures
- Deskew using the Hough line transform
- CLAHE contrast normalization
- Optional adaptive binarization for very faded prints

Each step is best-effort: a failing step logs a warning and passes the
image through unchanged.
"""

import cv2
import numpy as np
from PIL import Image
import logging

logger = logging.getLogger(__name__)


class DocumentImageCleaner:
    """Prepares page images for OCR."""

    def __init__(
        self,
        min_width: int = 1000,
        deskew_enabled: bool = True,
        contrast_enabled: bool = True,
        binarize_enabled: bool = False,
    ):
        self.min_width = min_width
        self.deskew_enabled = deskew_enabled
        self.contrast_enabled = contrast_enabled
        self.binarize_enabled = binarize_enabled

    def process(self, image: Image.Image) -> Image.Image:
        """
        Args:
            image: Page image in any PIL mode

        Returns:
            Grayscale ("L") PIL image
        """
        gray = np.array(image.convert("L"))

        gray = self._upscale(gray)
        if self.deskew_enabled:
            gray = self._deskew(gray)
        if self.contrast_enabled:
            gray = self._enhance_contrast(gray)
        if self.binarize_enabled:
            gray = self._binarize(gray)

        return Image.fromarray(gray)

    def _upscale(self, gray: np.ndarray) -> np.ndarray:
        height, width = gray.shape[:2]
        if width >= self.min_width or width == 0:
            return gray
        scale = self.min_width / width
        return cv2.resize(gray, (self.min_width, int(height * scale)), interpolation=cv2.INTER_CUBIC)

    def _deskew(self, gray: np.ndarray) -> np.ndarray:
        try:
            edges = cv2.Canny(gray, 50, 150, apertureSize=3)
            lines = cv2.HoughLinesP(
                edges,
                rho=1,
                theta=np.pi / 180,
                threshold=100,
                minLineLength=100,
                maxLineGap=10
            )
            if lines is None or len(lines) == 0:
                return gray

            angles = []
            for line in lines:
                x1, y1, x2, y2 = line[0]
                angle = np.degrees(np.arctan2(y2 - y1, x2 - x1))
                # Only text baselines and table rules, not vertical strokes
                if abs(angle) < 45:
                    angles.append(angle)

            if not angles:
                return gray

            median_angle = float(np.median(angles))
            if abs(median_angle) < 0.5:
                return gray

            height, width = gray.shape[:2]
            matrix = cv2.getRotationMatrix2D((width // 2, height // 2), median_angle, 1.0)
            rotated = cv2.warpAffine(
                gray,
                matrix,
                (width, height),
                flags=cv2.INTER_CUBIC,
                borderMode=cv2.BORDER_REPLICATE
            )
            logger.debug(f"Deskewed page image by {median_angle:.2f} degrees")
            return rotated

        except cv2.error as e:
            logger.warning(f"Deskew failed: {e}")
            return gray

    def _enhance_contrast(self, gray: np.ndarray) -> np.ndarray:
        try:
            clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
            return clahe.apply(gray)
        except cv2.error as e:
            logger.warning(f"Contrast enhancement failed: {e}")
            return gray

    def _binarize(self, gray: np.ndarray) -> np.ndarray:
        try:
            return cv2.adaptiveThreshold(
                gray,
                255,
                cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
                cv2.THRESH_BINARY,
                blockSize=11,
                C=2
            )
        except cv2.error as e:
            logger.warning(f"Binarization failed: {e}")
            return gray
