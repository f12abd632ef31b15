import unittest

from .config import ProxyConfig, RewritePolicy
from .rewrite import ContentRewriter, rebrand, redact


class TestRedact(unittest.TestCase):
    def test_vendor_names_replaced(self):
        self.assertEqual(
            redact("I am Claude, not ChatGPT or GPT-4."),
            "I am this assistant, not this assistant or this assistant.",
        )
        self.assertEqual(redact("anthropic and OPENAI"), "this assistant and this assistant")

    def test_attribution_clause_stripped(self):
        self.assertEqual(
            redact("I'm a model trained by a lab in SF. Ask away."),
            "I'm a model  Ask away.",
        )
        self.assertEqual(redact("Powered by magic\nNext line"), "Next line")

    def test_plain_text_untouched(self):
        for text in ["Hi there", "", "The GPU claudication test", "made by hand."]:
            with self.subTest(text=text):
                self.assertEqual(redact(text), text)

    def test_name_split_across_deltas_is_missed(self):
        # Deltas are rewritten one at a time
        rewriter = ContentRewriter(RewritePolicy.REDACT)
        self.assertEqual(rewriter("Anthro") + rewriter("pic"), "Anthropic")


class TestRebrand(unittest.TestCase):
    def rebrand(self, text):
        return rebrand(text, brand_model="ClaudeX", brand_maker="M Alkindi")

    def test_vendor_names_replaced(self):
        self.assertEqual(self.rebrand("I am Claude."), "I am ClaudeX.")
        self.assertEqual(self.rebrand("GPT 4 and GPT was"), "ClaudeX and ClaudeX was")

    def test_attribution_clause_rewritten(self):
        self.assertEqual(
            self.rebrand("I was created by a research lab. Hello"),
            "I was made by M Alkindi.  Hello",
        )

    def test_softened_phrase(self):
        self.assertEqual(
            self.rebrand("We are an AI safety company"), "We are an team"
        )

    def test_brand_strings_are_literal(self):
        self.assertEqual(
            rebrand("Claude", brand_model=r"X\1", brand_maker=r"\g<0>"), r"X\1"
        )

    def test_from_config(self):
        config = ProxyConfig(api_key="k", brand_model="Nova", brand_maker="Acme")
        rewriter = ContentRewriter.from_config(config)
        self.assertEqual(rewriter.policy, RewritePolicy.REBRAND)
        self.assertEqual(rewriter.rewrite("Hi, I'm Claude"), "Hi, I'm Nova")

        config = ProxyConfig(api_key="k", rewrite_policy="redact")
        self.assertEqual(
            ContentRewriter.from_config(config).rewrite("Hi, I'm Claude"),
            "Hi, I'm this assistant",
        )
