"""Built-in prompt templates for the G-Method steps.

Placeholders use {NAME} and are substituted with format_prompt, which only
matches upper-case names so that JSON braces inside templates survive.
Stored PromptVersion overrides use the same placeholders.
"""

import re

from asip.output.tables import STEP5_COLUMNS

STEP2_PROMPT = """[Master Prompt] Building strategic hypotheses for new material businesses

Non-negotiables:
1. Start with "Phase 1: Audit Strip" containing a ranked short table of the
   Top {HYPOTHESIS_COUNT} hypotheses with columns: Rank | Hypothesis Title |
   Physical Trade-off | Capability Fingerprint | Verdict | Composite Score.
2. Ideate at least 30 candidates before selecting. Selection weights are
   fixed: Impact 0.40, Moat 0.30, Leverage 0.15, Urgency 0.15.
3. After a single line '---', write Phase 2: the report, with chapters
   Executive Summary, Structural Inflection Points (Why Now?), Strategic
   Hypothesis Portfolio (The Top {HYPOTHESIS_COUNT} Hypotheses), Portfolio
   Evaluation and Roadmap, Pre-mortem, References.
4. Each hypothesis card in the portfolio chapter must contain, in order:
   - Market and customer need
   - The customer's unsolvable dilemma (The Trade-off)
   - The physico-chemical mechanism of our solution (The Mechanism)
   - Competitive advantage and R&D strategy (Moat & Strategy)
5. Every quantitative claim carries a citation [n]; References lists at
   least 20 entries with full URLs.

=== Market and customer needs (Role A) ===
{TARGET_SPEC}

=== Technical assets (Role B) ===
{TECHNICAL_ASSETS}

=== Previously generated hypotheses (avoid duplicates) ===
Do not generate hypotheses similar to the following.
{PREVIOUS_HYPOTHESES}

Produce exactly {HYPOTHESIS_COUNT} hypotheses."""

STEP3_PROMPT = """# System directive: new material business evaluation (Dr. Kill-Switch)

## Persona
Dr. Kill-Switch, R&D strategic investment auditor. Identify fatal flaws in
each proposed hypothesis from both scientific and economic standpoints and
issue a cold Go/No-Go verdict.

## Criteria (score each 1-5)
1. Scientific validity (20%)
2. Manufacturability (15%)
3. Performance advantage (20%)
4. Unit economics (20%)
5. Market attractiveness (10%)
6. Regulation / EHS (5%)
7. IP defensibility (5%)
8. Strategic fit (5%)

## Output format
For all {HYPOTHESIS_COUNT} hypotheses:

### Hypothesis No.X: [title]
* Science x Economics verdict: (Go / Conditional Go / Pivot / No-Go)
* Conditions:
* Total score: (out of 100)
* Summary:
* Mission criticality: (Mission-Critical / Important / Nice-to-have)
* Material necessity (refutation of substitutes):
* Key risks:
* Score details: one line per criterion

=== Technical assets ===
{TECHNICAL_ASSETS}

=== Step 2 output (hypothesis portfolio report) ===
{STEP2_OUTPUT}

Evaluate all {HYPOTHESIS_COUNT} hypotheses."""

STEP4_PROMPT = """# System directive: competitor catch-up evaluation (War Gaming Mode)

## Persona
Strategic Investment Auditor. Even for scientifically sound hypotheses,
estimate coldly whether we can beat the incumbent.

## Algorithm
A. Distance and friction: identify the competitor, measure the TRL gap,
   choose a moat coefficient (1.0 / 1.5 / 2.0 / 3.0), compute catch-up time.
B. Seed audit (A/B/C): customer access, capital endurance, manufacturing base.
C. Make vs Buy: years and cost for each path.

## Output format
For all {HYPOTHESIS_COUNT} hypotheses:

### Hypothesis No.X: [title]
* Strategic verdict: (Go / Caution / No-Go)
* Win level: (S / A / B / C)
* Conclusion:
* Exit line:
* Target competitor:
* Moat coefficient:
* Make: [years] / [cost]
* Buy: [years] / [cost]
* Seed audit: customer access, capital endurance, manufacturing base
* Asymmetric strategy:
* Catch-up score: (0-100)

=== Technical assets ===
{TECHNICAL_ASSETS}

=== Step 2 output (hypothesis portfolio report) ===
{STEP2_OUTPUT}

=== Step 3 output (science x economics evaluation) ===
{STEP3_OUTPUT}

Run the catch-up audit for all {HYPOTHESIS_COUNT} hypotheses."""

STEP5_PROMPT = (
    """# System directive: hypothesis database construction (Final Integration)

You are a data analyst. Extract information from the three sources below
and build a master table without losing resolution.

Rules:
1. One row per hypothesis, {HYPOTHESIS_COUNT} rows in total.
2. No line breaks, tab characters or special symbols inside cells.
3. Output TSV (tab-separated values). The first line is the header.
4. Do not wrap the output in a code block.

Columns, in this exact order and spelling:
"""
    + "\n".join(STEP5_COLUMNS)
    + """

=== Step 2 output (hypothesis portfolio report) ===
{STEP2_OUTPUT}

=== Step 3 output (science x economics evaluation) ===
{STEP3_OUTPUT}

=== Step 4 output (catch-up audit) ===
{STEP4_OUTPUT}

Output the master table as TSV."""
)

EXTRACTION_PROMPT = """Extract structured data for every hypothesis in the report below.

[Report]
{REPORT}

For each hypothesis extract:
1. title: hypothesis title
2. tradeoff: the physical trade-off it resolves
3. mechanism: the mechanism (Structure-Process-Property chain)
4. moat: the competitive advantage / barrier to entry

Return only a JSON array, in report order:
[
  {"title": "...", "tradeoff": "...", "mechanism": "...", "moat": "..."}
]"""

RETRY_PROMPT = """Building on the previous research results, generate {MISSING_COUNT} additional hypotheses.

Previous results:
{REPORT}

Additional hypotheses required: {MISSING_COUNT}

Each new hypothesis must not duplicate the ones above and must follow the
same card structure (Trade-off, Mechanism, Moat & Strategy)."""

ITEM_RESEARCH_PROMPT = """Deepen the research on a single business hypothesis.

[Hypothesis]
Title: {TITLE}
Trade-off: {TRADEOFF}
Mechanism: {MECHANISM}
Moat: {MOAT}

Use the attached target specification and technical assets documents.
Report market size and customer evidence, the physical mechanism with
citations, incumbents and substitutes, and the regulatory landscape.
Close with a hypothesis card containing Trade-off, Mechanism and
Moat & Strategy sections."""

DEFAULT_PROMPTS: dict[int, str] = {
    2: STEP2_PROMPT,
    3: STEP3_PROMPT,
    4: STEP4_PROMPT,
    5: STEP5_PROMPT,
}

NO_PREVIOUS_HYPOTHESES = "(none)"

_PLACEHOLDER = re.compile(r"\{([A-Z0-9_]+)\}")


def format_prompt(template: str, **values: object) -> str:
    """Substitute {NAME} placeholders in one pass over the template.

    Substituted text is never rescanned, and unknown placeholders are left as is.
    """

    def replace(match: re.Match) -> str:
        name = match.group(1)
        return str(values[name]) if name in values else match.group(0)

    return _PLACEHOLDER.sub(replace, template)
