from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List

from daycare_backend.database import get_db
from daycare_backend.app import models, schemas
from daycare_backend.app.auth import get_current_admin_user
from daycare_backend.app.bank_integration.categorization import normalize_category_name

router = APIRouter(prefix="/business-expenses/rules", tags=["business-expenses"])


@router.get("/", response_model=List[schemas.CategoryRule])
def list_rules(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user)
):
    """List category rules, newest first (the order they are applied in)."""
    return db.query(models.CategoryRule).filter(
        models.CategoryRule.user_id == current_user.id
    ).order_by(models.CategoryRule.created_at.desc(), models.CategoryRule.id.desc()).all()


@router.post("/", response_model=schemas.CategoryRule, status_code=status.HTTP_201_CREATED)
def create_rule(
    rule: schemas.CategoryRuleCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user)
):
    keyword = rule.keyword.strip()
    category = normalize_category_name(rule.category)
    if not keyword or not category:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Keyword and category are required"
        )

    db_rule = models.CategoryRule(
        user_id=current_user.id,
        keyword=keyword,
        match_field=rule.match_field,
        transaction_type=rule.transaction_type,
        category=category
    )
    db.add(db_rule)
    db.commit()
    db.refresh(db_rule)
    return db_rule


@router.delete("/{rule_id}")
def delete_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin_user)
):
    db_rule = db.query(models.CategoryRule).filter(
        models.CategoryRule.id == rule_id,
        models.CategoryRule.user_id == current_user.id
    ).first()

    if not db_rule:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Rule not found"
        )

    db.delete(db_rule)
    db.commit()
    return {"message": "Rule deleted successfully"}
