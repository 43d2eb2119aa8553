"""Tests for diagram cropping stage."""

from PIL import Image

from conftest import FakeRasterizer, make_document
from ragprep.models import BoundingBox, DiagramAsset, DiagramSource, DocumentOrigin
from ragprep.pipeline.stage_images import DiagramCropper, padded_crop_box


def diagram(diagram_id="diagram_1", page=2, bbox=None, origin=DocumentOrigin.PDF_DIGITAL):
    return DiagramAsset(
        id=diagram_id,
        source_pdf="rules.pdf",
        page=page,
        origin=origin,
        source=DiagramSource.AZURE_FIGURE,
        bounding_box=bbox,
    )


BOX = BoundingBox(x=0.25, y=0.25, width=0.5, height=0.5)


class TestPaddedCropBox:
    """Tests for crop padding."""

    def test_five_percent_padding(self):
        """Test the crop grows by five percent on each side."""
        assert padded_crop_box(diagram(bbox=BOX), 200, 200) == (45, 45, 155, 155)

    def test_clamped_to_page(self):
        """Test padding never leaves the page."""
        full = BoundingBox(x=0, y=0, width=1, height=1)
        assert padded_crop_box(diagram(bbox=full), 100, 80) == (0, 0, 100, 80)


class TestDiagramCropper:
    """Tests for diagram cropping."""

    def test_crops_pdf_page(self, pdf_document, output_dir):
        """Test a PDF diagram is cropped from its rendered page."""
        rasterizer = FakeRasterizer(size=(200, 200))

        (result,) = DiagramCropper(rasterizer).crop(pdf_document, [diagram(bbox=BOX)], output_dir)

        assert result.image_path == "diagrams/images/diagram_1.png"
        with Image.open(output_dir / result.image_path) as img:
            assert img.size == (110, 110)
        assert rasterizer.rendered == [2]

    def test_reuses_rendered_pages(self, pdf_document, output_dir):
        """Test pages rendered earlier are not rendered again."""
        rasterizer = FakeRasterizer(size=(200, 200))
        rendered = {2: FakeRasterizer(size=(100, 100)).render_page(pdf_document, 2)}

        (result,) = DiagramCropper(rasterizer).crop(pdf_document, [diagram(bbox=BOX)], output_dir, rendered)

        assert result.image_path
        assert rasterizer.rendered == []

    def test_one_render_per_page(self, pdf_document, output_dir):
        """Test diagrams on one page share a single render."""
        rasterizer = FakeRasterizer()
        diagrams = [diagram("diagram_1", bbox=BOX), diagram("diagram_2", bbox=BOX)]

        DiagramCropper(rasterizer).crop(pdf_document, diagrams, output_dir)

        assert rasterizer.rendered == [2]

    def test_image_document_uses_normalized_image(self, tmp_path, output_dir):
        """Test image documents crop from the normalized PNG."""
        image = tmp_path / "normalized_note.png"
        Image.new("L", (400, 200), 255).save(image)
        document = make_document(image, origin=DocumentOrigin.IMAGE_NORMALIZED)

        (result,) = DiagramCropper(None).crop(
            document, [diagram(page=1, bbox=BOX, origin=DocumentOrigin.IMAGE_NORMALIZED)], output_dir
        )

        with Image.open(output_dir / result.image_path) as img:
            assert img.size == (220, 110)

    def test_render_failure_leaves_path_empty(self, pdf_document, output_dir):
        """Test a render failure leaves the image path unset."""
        (result,) = DiagramCropper(FakeRasterizer(fail_pages={2})).crop(
            pdf_document, [diagram(bbox=BOX)], output_dir
        )
        assert result.image_path == ""

    def test_no_rasterizer(self, pdf_document, output_dir):
        """Test cropping without a rasterizer leaves the path unset."""
        (result,) = DiagramCropper(None).crop(pdf_document, [diagram(bbox=BOX)], output_dir)
        assert result.image_path == ""

    def test_without_bbox_untouched(self, pdf_document, output_dir):
        """Test a diagram without a box is passed through."""
        original = diagram()
        (result,) = DiagramCropper(FakeRasterizer()).crop(pdf_document, [original], output_dir)
        assert result is original
