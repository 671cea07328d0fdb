"""
Centralized AI Prompt Repository
- Keeps the feedback schema in one place
- Decouples prompt wording from the analysis client
"""

RESUME_REVIEW_SYSTEM = (
    "You are an expert resume reviewer. Your task is to analyze the provided resume and job description "
    "and respond ONLY with a valid JSON object in the specified format. "
    "Do not include any extra text or explanations."
)

# --- MODE INSTRUCTIONS ---
RECRUITER_MODE_INSTRUCTION = """Note: This resume is intended for recruiter viewing (PDF/digital format).
- Icons, clickable symbols, and links should NOT be flagged as "non-standard symbols" unless they genuinely obscure or confuse information for human readers.
- Standard bullet points, such as "-", "•" or "*", MUST NOT be flagged as non-standard symbols in this mode. If they are present and used consistently, explicitly state: "Bullet points are used appropriately for clarity."
- If section headings are visually distinct, call this out as a strength.
- If links or icons improve scanning/clicking/navigating the resume, note this as a positive feature for recruiters.
- Only highlight formatting issues that genuinely reduce visual appeal, structure, or usability for a recruiter; do not apply ATS-only rules to this mode."""

ATS_MODE_INSTRUCTION = """Note: This resume is intended for ATS upload and parsing (plain text).
- The resume should be plain text only: no icons, emojis, special symbols, images, graphical bullets, tables, columns, or sidebars.
- List every unique symbol, bullet, or unusual formatting detected in the 'formatting_audit' section.
- Only flag and penalize those symbols that are NOT plain "-", "*", "•", or standard ASCII punctuation (e.g. ! ? . , : ;).
- For ANY flagged symbol or formatting issue, explain which part of the resume is affected and exactly why ATS parsing would fail or mis-associate data.
- Check for and penalize: images (including profile photos), text in tables/columns/sidebars, or any section where content is not in plain list form.
- Set 'contains_tables_or_columns' in the audit to true/false and document what you found if true.
- Praise single-column, left-aligned formatting, standard bullet points and section headings, and use of text labels for contact info.
- If all symbols are ATS-compatible, clearly state: "All symbols and bullet points are ATS-compatible."
- If resume is formatted for maximum ATS compatibility, clearly state: "Resume formatted for maximum ATS compatibility."
- Do not warn or penalize unless a definite, document-specific ATS risk is found.
- Your formatting_audit and tips should empower the user to fix only what actually blocks ATS parsing, not simply suggest generic improvements."""

_TIP_SHAPE = '{{"tip": "<string>", "explanation": "<string>", "priority": "<high/medium/low>"}}'

FEEDBACK_SCHEMA = """{{
  "overall_score": <number between 0 and 100>,
  "ats_score": <number between 0 and 100>,
  "score_interpretation": {{
    "90-100": "Exceptional - Top 5% of candidates",
    "80-89": "Very Strong - Likely to pass initial screening",
    "70-79": "Good - Competitive but needs improvement",
    "60-69": "Average - Significant improvements needed",
    "50-59": "Below Average - Major revisions required",
    "0-49": "Poor - Complete overhaul necessary"
  }},
  "categories": {{
    "formatting": {{
      "score": <number between 0 and 100>,
      "weight": 15,
      "description": "Visual appeal, consistency, readability, and professional layout",
      "tips": [{tip}],
      "formatting_audit": {{
        "non_standard_symbols_or_icons_present": <true/false>,
        "symbols_and_bullets_found": ["<list every unique symbol, bullet, or icon actually present>"],
        "problematic_symbols": ["<list only those symbols/bullets that would break ATS, with line/section or NA if none>"],
        "contains_tables_or_columns": <true/false>,
        "remarks_about_symbols": "<If none detected, say 'No non-standard symbols or icons detected.' If all found are ATS-compatible, explicitly state: 'All symbols and bullet points are ATS-compatible.'>",
        "section_headings": "<E.g., 'Section headings are standardized and clear.' or details on any issues>",
        "bullet_points": "<E.g., 'Simple '-' or '*' bullets used consistently.' or details on problems/inconsistency>"
      }}
    }},
    "content": {{
      "score": <number between 0 and 100>,
      "weight": 30,
      "description": "Quality of experience descriptions, achievements, and overall narrative",
      "tips": [{tip}]
    }},
    "keywords": {{
      "score": <number between 0 and 100>,
      "weight": 25,
      "description": "Alignment with job requirements and industry terminology",
      "missing_keywords": ["<keyword1>", "<keyword2>"],
      "matched_keywords": ["<keyword1>", "<keyword2>"],
      "tips": [{tip}]
    }},
    "experience": {{
      "score": <number between 0 and 100>,
      "weight": 20,
      "description": "Relevance, progression, and quantified achievements",
      "tips": [{tip}]
    }},
    "skills": {{
      "score": <number between 0 and 100>,
      "weight": 10,
      "description": "Technical and soft skills alignment with role requirements",
      "tips": [{tip}]
    }}
  }},
  "detailed_analysis": {{
    "strengths": ["<specific strength with example>"],
    "critical_gaps": ["<gap that significantly impacts candidacy>"],
    "ats_compatibility": {{
      "parsing_issues": ["<issue1>", "<issue2>"],
      "format_recommendations": ["<recommendation1>", "<recommendation2>"]
    }}
  }},
  "improvement_roadmap": {{
    "immediate_fixes": [{{"action": "<string>", "impact": "<high/medium/low>", "effort": "<high/medium/low>"}}],
    "strategic_enhancements": [{{"action": "<string>", "impact": "<high/medium/low>", "effort": "<high/medium/low>"}}],
    "long_term_goals": [{{"action": "<string>", "impact": "<high/medium/low>", "effort": "<high/medium/low>"}}]
  }},
  "competitive_analysis": {{
    "market_position": "<where this resume stands against typical candidates>",
    "differentiation_opportunities": ["<opportunity1>", "<opportunity2>"],
    "industry_benchmarks": "<how resume compares to industry standards>"
  }},
  "suggestions": [
    {{
      "category": "<formatting/content/keywords/experience/skills>",
      "tip": "<specific actionable advice>",
      "explanation": "<why this matters and how it helps>",
      "priority": "<high/medium/low>",
      "estimated_impact": "<how much this could improve overall score>"
    }}
  ]
}}""".format(tip=_TIP_SHAPE)

SCORING_GUIDELINES = """Scoring Guidelines:
- 90-100: Exceptional resume that stands out significantly, minimal improvements needed
- 80-89: Very strong resume likely to pass initial screening, minor optimizations possible
- 70-79: Good resume that's competitive but has clear improvement opportunities
- 60-69: Average resume requiring significant enhancements to be competitive
- 50-59: Below average resume needing major revisions across multiple areas
- 0-49: Poor resume requiring complete overhaul of structure and content

Focus on:
1. ATS optimization and keyword density analysis
2. Quantified achievements and impact metrics
3. Job-specific skill alignment and gaps
4. Professional formatting and readability
5. Content relevance and career progression narrative
6. Industry-specific best practices and expectations

Provide specific, actionable feedback with clear priorities and expected impact.
Consider both technical requirements and human reviewer appeal.
Analyze against current market standards and hiring trends."""

RESUME_REVIEW_USER_TEMPLATE = """{mode_instruction}

Analyze this resume for the position of "{job_title}" at "{company_name}" and provide detailed feedback.

Job Description: {job_description}

Resume Content: {resume_text}

Please provide a comprehensive analysis in the following JSON format ONLY. Do not include any text, markdown, or code fences before or after the JSON object:
{schema}

{guidelines}"""


def get_prompt(template: str, **kwargs) -> str:
    return template.format(**kwargs)
