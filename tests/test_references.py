"""
Tests for reference image collection and prompt wrapping.
"""

from dataclasses import replace

from shotsmith.references import build_image_prompt, collect_reference_images


class TestCollectReferenceImages:
    """Scene first, then one image per character."""

    def test_scene_then_variation_then_base(self, sample_project):
        refs = collect_reference_images(sample_project.shot("shot-1"), sample_project.script)
        assert refs == [
            "data:image/png;base64,U0NFTkU=",
            "data:image/png;base64,VkFSQQ==",
            "data:image/png;base64,Qk9C",
        ]

    def test_variation_without_image_falls_back_to_base(self, sample_project):
        script = sample_project.script
        alice = script.character("char-a")
        alice = replace(alice, variations=(replace(alice.variations[0], reference_image=None),))
        script = replace(script, characters=(alice, script.characters[1]))

        refs = collect_reference_images(sample_project.shot("shot-1"), script)
        assert refs[1] == "data:image/png;base64,QUxJQ0U="

    def test_missing_images_and_unknown_ids_skipped(self, sample_project):
        script = sample_project.script
        bob = replace(script.character("char-b"), reference_image=None)
        scene = replace(script.scene("scene-1"), reference_image=None)
        script = replace(script, characters=(script.characters[0], bob), scenes=(scene,))
        shot = replace(sample_project.shot("shot-1"), characters=("char-a", "char-b", "char-zz"))

        refs = collect_reference_images(shot, script)
        assert refs == ["data:image/png;base64,VkFSQQ=="]

    def test_no_script(self, sample_project):
        assert collect_reference_images(sample_project.shot("shot-1"), None) == []


class TestBuildImagePrompt:

    def test_no_references_leaves_prompt_alone(self):
        assert build_image_prompt("A lantern", []) == "A lantern"

    def test_strict_block(self):
        prompt = build_image_prompt("A lantern", ["data:image/png;base64,AAA"])
        assert '"A lantern"' in prompt
        assert "Character consistency" in prompt

    def test_variation_block(self):
        prompt = build_image_prompt("yellow raincoat", ["data:image/png;base64,AAA"], is_variation=True)
        assert '"yellow raincoat"' in prompt
        assert "outfit" in prompt
        assert "Character consistency" not in prompt

    def test_braces_in_prompt_are_kept(self):
        prompt = build_image_prompt("sign reading {OPEN}", ["x"])
        assert "{OPEN}" in prompt
