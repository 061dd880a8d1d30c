from pathlib import Path
import sys
import unittest

SERVER_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(SERVER_DIR))

from sgr_style import (
    DEFAULT_STYLE,
    NamedColor,
    PaletteColor,
    RgbColor,
    StyleAttributes,
    Underline,
    apply_sgr,
    color_hex,
)


class ApplySgrTests(unittest.TestCase):
    def test_decorations_and_cancels(self):
        style = apply_sgr(DEFAULT_STYLE, [1, 3, 4, 7, 9])
        self.assertTrue(style.bold)
        self.assertTrue(style.italic)
        self.assertEqual(style.underline, Underline.SINGLE)
        self.assertTrue(style.inverse)
        self.assertTrue(style.strikethrough)
        style = apply_sgr(style, [22, 23, 24, 27, 29])
        self.assertEqual(style, DEFAULT_STYLE)

    def test_22_cancels_bold_and_dim(self):
        style = apply_sgr(DEFAULT_STYLE, [1, 2])
        self.assertTrue(style.dim)
        self.assertEqual(apply_sgr(style, [22]), DEFAULT_STYLE)

    def test_named_colors(self):
        style = apply_sgr(DEFAULT_STYLE, [31, 102])
        self.assertEqual(style.fg, NamedColor(1))
        self.assertEqual(style.bg, NamedColor(10))
        self.assertEqual(style.fg.name, "red")
        self.assertEqual(style.bg.name, "brGreen")
        style = apply_sgr(style, [39, 49])
        self.assertIsNone(style.fg)
        self.assertIsNone(style.bg)

    def test_bright_foreground(self):
        self.assertEqual(apply_sgr(DEFAULT_STYLE, [97]).fg, NamedColor(15))

    def test_extended_colors(self):
        style = apply_sgr(DEFAULT_STYLE, [38, 5, 196, 48, 2, 10, 20, 30])
        self.assertEqual(style.fg, PaletteColor(196))
        self.assertEqual(style.bg, RgbColor(10, 20, 30))

    def test_extended_color_followed_by_more_codes(self):
        style = apply_sgr(DEFAULT_STYLE, [38, 2, 1, 2, 3, 1])
        self.assertEqual(style.fg, RgbColor(1, 2, 3))
        self.assertTrue(style.bold)
        self.assertFalse(style.dim)

    def test_incomplete_extended_color_is_ignored(self):
        self.assertEqual(apply_sgr(DEFAULT_STYLE, [38, 2, 1]), DEFAULT_STYLE)
        self.assertEqual(apply_sgr(DEFAULT_STYLE, [48, 5]), DEFAULT_STYLE)

    def test_out_of_range_components_ignored(self):
        self.assertIsNone(apply_sgr(DEFAULT_STYLE, [38, 5, 300]).fg)
        self.assertIsNone(apply_sgr(DEFAULT_STYLE, [38, 2, 256, 0, 0]).fg)

    def test_reset_in_the_middle(self):
        style = apply_sgr(DEFAULT_STYLE, [1, 31, 0, 4])
        self.assertEqual(style, StyleAttributes(underline=Underline.SINGLE))

    def test_empty_list_resets(self):
        self.assertEqual(apply_sgr(apply_sgr(DEFAULT_STYLE, [1]), []), DEFAULT_STYLE)

    def test_unknown_codes_ignored(self):
        style = apply_sgr(DEFAULT_STYLE, [1])
        self.assertIs(apply_sgr(style, [5, 53, 73, 999]), style)

    def test_hidden_and_double_underline(self):
        style = apply_sgr(DEFAULT_STYLE, [8, 21])
        self.assertTrue(style.hidden)
        self.assertEqual(style.underline, Underline.DOUBLE)
        self.assertEqual(apply_sgr(style, [28, 24]), DEFAULT_STYLE)


class ColorTests(unittest.TestCase):
    def test_palette_cube_and_greyscale(self):
        self.assertEqual(color_hex(PaletteColor(196)), "#ff0000")
        self.assertEqual(color_hex(PaletteColor(232)), "#080808")
        self.assertEqual(PaletteColor(9).label(), "brRed")
        self.assertEqual(PaletteColor(21).label(), "#0000ff")

    def test_rgb_label(self):
        self.assertEqual(RgbColor(1, 2, 255).label(), "#0102ff")

    def test_variants_never_compare_equal(self):
        self.assertNotEqual(NamedColor(1), PaletteColor(1))


class ToRunTests(unittest.TestCase):
    def test_compact_run(self):
        style = apply_sgr(DEFAULT_STYLE, [1, 32])
        self.assertEqual(style.to_run("ok"), {"t": "ok", "fg": "green", "b": True})

    def test_reverse_defaults(self):
        run = apply_sgr(DEFAULT_STYLE, [7]).to_run("rev")
        self.assertEqual(run["fg"], "_defBg")
        self.assertEqual(run["bg"], "_defFg")

    def test_reverse_swaps_colors(self):
        run = apply_sgr(DEFAULT_STYLE, [7, 31]).to_run("x")
        self.assertEqual(run["bg"], "red")
        self.assertEqual(run["fg"], "_defBg")


if __name__ == "__main__":
    unittest.main()
